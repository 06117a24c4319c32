import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from document_queue import queue_credit_note
from errors import DataIntegrityError, NotFoundError
from models import db, Order, Product, Return, ReturnItem, StockMovement
from order_import import get_mirror, money

logger = logging.getLogger(__name__)

SHIPPING_REFUND = 'shipping_refund'


@dataclass
class RefundResult:
    success: bool
    message: str
    return_id: Optional[int] = None
    duplicate: bool = False

    def to_dict(self):
        return {
            'success': self.success,
            'message': self.message,
            'returnId': self.return_id,
            'duplicate': self.duplicate,
        }


def compute_refund_totals(refund):
    """(subtotal, tax) of a refund including order level adjustments"""
    subtotal = Decimal('0.00')
    tax = Decimal('0.00')
    for line in refund.get('refund_line_items', []):
        subtotal += money(line.get('subtotal'))
        tax += money(line.get('total_tax'))

    for adjustment in refund.get('order_adjustments', []):
        amount = money(adjustment.get('amount'))
        adjustment_tax = money(adjustment.get('tax_amount'))
        if adjustment.get('kind') == SHIPPING_REFUND:
            # Shopify reports refunded shipping as a negative adjustment
            amount, adjustment_tax = abs(amount), abs(adjustment_tax)
        subtotal += amount
        tax += adjustment_tax
    return subtotal, tax


def _original_number(order):
    if order.document_number:
        return f"{order.document_prefix or ''}{order.document_number}"
    return str(order.order_number)


def _next_return_number(tenant_id):
    current = db.session.query(db.func.max(Return.return_number)).filter(Return.tenant_id == tenant_id).scalar()
    return (current or 0) + 1


def match_order_item(tenant_id, order, refund_line, original_line_ids):
    """Order item a refund line refers to: by SKU, then barcode, then original line position."""
    line_item = refund_line.get('line_item') or {}
    items = list(order.items)

    for column, value in ((Product.sku, line_item.get('sku')), (Product.barcode, line_item.get('barcode'))):
        if not value:
            continue
        product = Product.query.filter(Product.tenant_id == tenant_id, column == value).first()
        if product:
            for item in items:
                if item.product_id == product.id:
                    return item

    line_id = str(refund_line.get('line_item_id') or line_item.get('id') or '')
    if line_id in original_line_ids:
        position = original_line_ids.index(line_id)
        for item in items:
            if item.position == position:
                return item
    return None


def process_refund(tenant_id, refund, integration) -> RefundResult:
    shopify_order_id = str(refund['order_id'])
    refund_id = str(refund['id'])
    logger.info("[Shopify Refund] Processing refund %s for order %s", refund_id, shopify_order_id)

    mirror = get_mirror(tenant_id, shopify_order_id)
    if not mirror or not mirror.order_id:
        logger.error("[Shopify Refund] Original order not found: %s", shopify_order_id)
        raise NotFoundError("Original order not found locally")

    order = Order.query.filter_by(id=mirror.order_id, tenant_id=tenant_id).first()
    if not order:
        raise NotFoundError("Original order not found locally")

    existing = Return.query.filter_by(tenant_id=tenant_id, order_id=order.id, external_refund_id=refund_id).first()
    if existing:
        logger.info("[Shopify Refund] Duplicate: refund %s already processed as return %s", refund_id, existing.id)
        return RefundResult(True, "Refund already processed", return_id=existing.id, duplicate=True)

    wants_credit_note = bool(integration.generate_documents and order.fiscal_document_ref)
    restock = bool(refund.get('restock'))
    original_line_ids = [str(li.get('id')) for li in (mirror.payload or {}).get('line_items', [])]

    try:
        subtotal, tax = compute_refund_totals(refund)
        return_record = Return(
            tenant_id=tenant_id,
            order_id=order.id,
            return_number=_next_return_number(tenant_id),
            customer_id=order.customer_id,
            external_refund_id=refund_id,
            status='completed',
            reason='customer_changed_mind',
            reason_notes=f"Shopify refund: {refund_id}",
            subtotal=subtotal,
            tax_amount=tax,
            total=subtotal + tax,
            refund_method='card',
            restock_items=restock,
            credit_note_status='pending' if wants_credit_note else 'not_required',
            original_document_ref=order.fiscal_document_ref,
            original_number=_original_number(order),
            original_date=(order.created_at or datetime.utcnow()).date(),
            created_at=datetime.utcnow(),
        )
        db.session.add(return_record)
        db.session.flush()

        for line in refund.get('refund_line_items', []):
            quantity = int(line.get('quantity') or 0)
            order_item = match_order_item(tenant_id, order, line, original_line_ids)
            if not order_item:
                raise DataIntegrityError(
                    f"Refund line {line.get('line_item_id')} does not match any item of order {order.order_number}"
                )

            db.session.add(ReturnItem(
                return_id=return_record.id,
                order_item_id=order_item.id,
                product_id=order_item.product_id,
                quantity=quantity,
                unit_price=order_item.unit_price,
                tax_amount=money(money(line.get('total_tax')) / quantity) if quantity else Decimal('0.00'),
            ))

            product = db.session.get(Product, order_item.product_id)
            if restock and product and product.track_inventory and quantity:
                db.session.add(StockMovement(
                    tenant_id=tenant_id,
                    product_id=order_item.product_id,
                    type='return',
                    quantity=quantity,
                    reference_id=return_record.id,
                    notes=f"Shopify refund {refund_id}",
                    created_at=datetime.utcnow(),
                ))

        order.has_returns = True
        db.session.commit()
    except (DataIntegrityError, SQLAlchemyError) as e:
        db.session.rollback()
        message = e.message if isinstance(e, DataIntegrityError) else f"Database error: {e}"
        logger.error("[Shopify Refund] Failed to process refund %s: %s", refund_id, message)
        raise DataIntegrityError(message) from e

    if wants_credit_note:
        _queue_credit_note(tenant_id, return_record, order, refund_id)

    logger.info("[Shopify Refund] Processed refund %s as return %s", refund_id, return_record.id)
    return RefundResult(True, "Refund processed successfully", return_id=return_record.id)


def _queue_credit_note(tenant_id, return_record, order, refund_id):
    try:
        queue_credit_note(tenant_id, return_record, order, f"Shopify refund: {refund_id}")
        return_record.credit_note_status = 'queued'
        db.session.commit()
        logger.info("[Shopify Refund] Credit note queued for return %s", return_record.id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("[Shopify Refund] Failed to queue credit note for return %s: %s", return_record.id, e)
        return_record.credit_note_status = 'failed'
        db.session.commit()
