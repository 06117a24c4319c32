"""
Import Shopify orders into the local order ledger.

Each Shopify order is mirrored in ShopifyOrder; a mirror in status
'processing' or 'completed' is never imported again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from document_queue import queue_sale_document
from errors import CredentialError, DataIntegrityError, NotFoundError
from models import db, Customer, Integration, Order, OrderItem, Payment, ShopifyOrder, StockMovement
from product_mapping import resolve_variant
from shopify_client import get_shopify_client

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

# Mirror states that must not be imported again
CLAIMED_STATUSES = ('processing', 'completed')


def money(value) -> Decimal:
    if value in (None, ''):
        return Decimal('0.00')
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class ImportResult:
    success: bool
    message: str
    order_id: Optional[int] = None
    mirror_id: Optional[int] = None
    duplicate: bool = False

    def to_dict(self):
        return {
            'success': self.success,
            'message': self.message,
            'orderId': self.order_id,
            'shopifyOrderRecordId': self.mirror_id,
            'duplicate': self.duplicate,
        }


@dataclass
class PollResult:
    found: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'success': True,
            'message': f"Found {self.found} orders, imported {self.imported}, "
                       f"skipped {self.skipped}, failed {self.failed}",
            'imported': self.imported,
            'skipped': self.skipped,
            'failed': self.failed,
            'errors': self.errors,
        }


# --- Mirror ---

def get_mirror(tenant_id, shopify_order_id):
    return ShopifyOrder.query.filter_by(tenant_id=tenant_id, shopify_order_id=str(shopify_order_id)).first()


def upsert_mirror(tenant_id, order, status):
    mirror = get_mirror(tenant_id, order['id'])
    if not mirror:
        customer = order.get('customer') or {}
        mirror = ShopifyOrder(
            tenant_id=tenant_id,
            shopify_order_id=str(order['id']),
            shopify_order_number=str(order.get('order_number') or ''),
            shopify_order_name=order.get('name'),
            payload=order,
            subtotal_price=money(order.get('subtotal_price')),
            total_tax=money(order.get('total_tax')),
            total_discounts=money(order.get('total_discounts')),
            total_price=money(order.get('total_price')),
            currency=order.get('currency'),
            customer_email=order.get('email') or customer.get('email'),
            customer_phone=order.get('phone') or customer.get('phone'),
            created_at=datetime.utcnow(),
        )
        db.session.add(mirror)
    mirror.status = status
    return mirror


def claim_mirror(tenant_id, order):
    """Move the mirror to 'processing' for this worker.

    Returns the mirror, or None when another worker holds it or it was
    already imported. The claim is one conditional UPDATE; at most one worker
    holds a mirror in 'processing'.
    """
    mirror = get_mirror(tenant_id, order['id'])
    if not mirror:
        mirror = upsert_mirror(tenant_id, order, 'processing')
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return None
        return mirror

    claimed = (ShopifyOrder.query
               .filter(ShopifyOrder.id == mirror.id, ShopifyOrder.status.notin_(CLAIMED_STATUSES))
               .update({ShopifyOrder.status: 'processing'}, synchronize_session=False))
    db.session.commit()
    return mirror if claimed else None


# --- Helpers ---

def _customer_name(customer):
    name = f"{customer.get('first_name') or ''} {customer.get('last_name') or ''}".strip()
    return name or "Shopify Customer"


def find_or_create_customer(tenant_id, order):
    customer = order.get('customer') or {}
    email = order.get('email') or customer.get('email')
    phone = order.get('phone') or customer.get('phone')
    if not email and not phone:
        return None

    if email:
        existing = Customer.query.filter_by(tenant_id=tenant_id, email=email).first()
        if existing:
            return existing
    if phone:
        existing = Customer.query.filter_by(tenant_id=tenant_id, phone=phone).first()
        if existing:
            return existing

    address = order.get('shipping_address') or order.get('billing_address') or customer.get('default_address')
    new_customer = Customer(
        tenant_id=tenant_id,
        name=_customer_name(customer),
        email=email,
        phone=phone,
        address=f"{address.get('address1') or ''} {address.get('address2') or ''}".strip() if address else None,
    )
    db.session.add(new_customer)
    db.session.flush()
    return new_customer


def map_payment_method(gateways):
    joined = " ".join(gateways or []).lower()
    if "cash" in joined or "cod" in joined:
        return "cash"
    return "card"


def _line_discount(item):
    if item.get('total_discount') not in (None, ''):
        return money(item['total_discount'])
    return sum((money(a.get('amount')) for a in item.get('discount_allocations', [])), Decimal('0.00'))


def _line_tax(item):
    return sum((money(t.get('price')) for t in item.get('tax_lines', [])), Decimal('0.00'))


def compute_totals(order):
    """Local totals taken from the Shopify payload"""
    subtotal = sum(
        (money(item.get('price')) * int(item.get('quantity') or 0) for item in order.get('line_items', [])),
        Decimal('0.00'),
    )
    discount = money(order.get('total_discounts'))
    tax = money(order.get('total_tax'))
    shipping = sum((money(s.get('price')) for s in order.get('shipping_lines', [])), Decimal('0.00'))

    if order.get('total_price') not in (None, ''):
        total = money(order['total_price'])
    else:
        total = subtotal - discount + shipping
        if not order.get('taxes_included'):
            total += tax
    return {
        'subtotal': subtotal,
        'discount': discount,
        'tax': tax,
        'shipping': shipping,
        'total': total,
    }


def map_line_items(tenant_id, line_items):
    """Returns (mapped, unmapped) where mapped holds (line item, ProductMap) pairs."""
    mapped, unmapped = [], []
    for item in line_items:
        mapping = resolve_variant(tenant_id, item.get('variant_id'))
        if mapping:
            mapped.append((item, mapping))
        else:
            unmapped.append(item)
    return mapped, unmapped


def _next_order_number(tenant_id):
    current = db.session.query(db.func.max(Order.order_number)).filter(Order.tenant_id == tenant_id).scalar()
    return (current or 0) + 1


# --- Import ---

def _duplicate(mirror, name):
    if mirror and mirror.status == 'completed':
        logger.info("[Shopify Order Import] Duplicate: order %s already imported", name)
        return ImportResult(True, "Order already imported", order_id=mirror.order_id,
                            mirror_id=mirror.id, duplicate=True)
    logger.info("[Shopify Order Import] Duplicate: order %s is already being imported", name)
    return ImportResult(True, "Order is already being imported", mirror_id=mirror.id if mirror else None,
                        duplicate=True)


def handle_order_payload(tenant_id, order, integration) -> ImportResult:
    """Entry point for orders/create and orders/paid"""
    mirror = get_mirror(tenant_id, order['id'])
    if mirror and mirror.status in CLAIMED_STATUSES:
        return _duplicate(mirror, order.get('name'))

    if not integration.auto_import_orders:
        mirror = upsert_mirror(tenant_id, order, 'pending')
        db.session.commit()
        logger.info("[Shopify Order Import] Auto-import off, order %s stored as pending", order.get('name'))
        return ImportResult(True, "Order stored as pending", mirror_id=mirror.id)

    return import_order(tenant_id, order, integration)


def import_order(tenant_id, order, integration) -> ImportResult:
    name = order.get('name')
    logger.info("[Shopify Order Import] Processing order %s for tenant %s", name, tenant_id)

    mirror = claim_mirror(tenant_id, order)
    if mirror is None:
        return _duplicate(get_mirror(tenant_id, order['id']), name)
    mirror_id = mirror.id

    try:
        local_order = _create_local_order(tenant_id, order, mirror)
        db.session.commit()
    except (DataIntegrityError, SQLAlchemyError) as e:
        db.session.rollback()
        message = e.message if isinstance(e, DataIntegrityError) else f"Database error: {e}"
        logger.error("[Shopify Order Import] Failed to import order %s: %s", name, message)
        mirror = db.session.get(ShopifyOrder, mirror_id)
        mirror.status = 'failed'
        mirror.error_message = message
        mirror.retry_count = (mirror.retry_count or 0) + 1
        db.session.commit()
        raise DataIntegrityError(message) from e

    if integration.generate_documents:
        try:
            queue_sale_document(tenant_id, local_order)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("[Shopify Order Import] Failed to queue sale document for order %s: %s", local_order.id, e)

    logger.info("[Shopify Order Import] Imported order %s as %s", name, local_order.id)
    return ImportResult(True, f"Order {name} imported successfully", order_id=local_order.id, mirror_id=mirror_id)


def _create_local_order(tenant_id, order, mirror):
    line_items = order.get('line_items', [])
    if not line_items:
        raise DataIntegrityError("Order has no line items")

    mapped, unmapped = map_line_items(tenant_id, line_items)
    if unmapped:
        names = ", ".join(item.get('sku') or item.get('title') or str(item.get('id')) for item in unmapped)
        raise DataIntegrityError(f"Unmapped line items: {names}")

    customer = find_or_create_customer(tenant_id, order)
    totals = compute_totals(order)
    shopify_order_id = str(order['id'])

    local_order = Order(
        tenant_id=tenant_id,
        order_number=_next_order_number(tenant_id),
        customer_id=customer.id if customer else None,
        status='completed',
        subtotal=totals['subtotal'],
        tax_amount=totals['tax'],
        discount_amount=totals['discount'],
        shipping_amount=totals['shipping'],
        total=totals['total'],
        currency=order.get('currency'),
        notes=f"Shopify order {order.get('name')}",
        channel='shopify',
        external_order_id=shopify_order_id,
        created_at=datetime.utcnow(),
        completed_at=datetime.utcnow(),
    )
    db.session.add(local_order)
    db.session.flush()

    for position, (item, mapping) in enumerate(mapped):
        quantity = int(item.get('quantity') or 0)
        db.session.add(OrderItem(
            order_id=local_order.id,
            product_id=mapping.product_id,
            position=position,
            quantity=quantity,
            unit_price=money(item.get('price')),
            discount_amount=_line_discount(item),
            tax_amount=_line_tax(item),
            external_line_id=str(item.get('id')) if item.get('id') else None,
            notes=item.get('variant_title') or None,
        ))
        if mapping.product.track_inventory:
            db.session.add(StockMovement(
                tenant_id=tenant_id,
                product_id=mapping.product_id,
                type='sale',
                quantity=-quantity,
                reference_id=local_order.id,
                notes=f"Shopify order {order.get('name')}",
                created_at=datetime.utcnow(),
            ))

    gateways = order.get('payment_gateway_names') or []
    db.session.add(Payment(
        order_id=local_order.id,
        method=map_payment_method(gateways),
        amount=totals['total'],
        reference=f"Shopify: {', '.join(gateways)}",
    ))

    mirror.status = 'completed'
    mirror.order_id = local_order.id
    mirror.error_message = None
    mirror.processed_at = datetime.utcnow()
    return local_order


def import_pending_order(tenant_id, mirror_id) -> ImportResult:
    """Manual retry of a pending or failed mirror"""
    mirror = ShopifyOrder.query.filter_by(id=mirror_id, tenant_id=tenant_id).first()
    if not mirror:
        raise NotFoundError("Shopify order record not found")
    if mirror.status == 'completed':
        return ImportResult(True, "Order already imported", order_id=mirror.order_id,
                            mirror_id=mirror.id, duplicate=True)
    if not mirror.payload:
        raise DataIntegrityError("No order payload stored")

    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration:
        raise NotFoundError("Shopify integration not configured")
    return import_order(tenant_id, mirror.payload, integration)


def poll_recent_orders(tenant_id, hours=24, client=None) -> PollResult:
    """Polling fallback for webhooks that never arrived"""
    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration:
        raise NotFoundError("Shopify integration not configured")
    client = client or get_shopify_client(tenant_id)
    if not client:
        raise CredentialError("Shopify not configured or not active")

    since = datetime.utcnow() - timedelta(hours=hours)
    orders = client.get_orders(limit=50, status='any', created_at_min=since)
    logger.info("[Shopify Order Poll] Found %s orders in last %sh", len(orders), hours)

    result = PollResult(found=len(orders))
    for order in orders:
        mirror = get_mirror(tenant_id, order['id'])
        if mirror and mirror.status in CLAIMED_STATUSES:
            result.skipped += 1
            continue
        try:
            imported = import_order(tenant_id, order, integration)
        except DataIntegrityError as e:
            result.failed += 1
            result.errors.append(f"{order.get('name')}: {e.message}")
            continue
        if imported.duplicate:
            result.skipped += 1
        else:
            result.imported += 1

    integration.last_sync_at = datetime.utcnow()
    db.session.commit()
    return result
