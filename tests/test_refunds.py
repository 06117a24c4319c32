from decimal import Decimal

import pytest

from errors import NotFoundError
from models import db, DocumentRequest, Order, Return, ReturnItem, StockMovement
from order_import import import_order
from refunds import compute_refund_totals, process_refund

from conftest import TENANT, order_payload


@pytest.fixture
def imported_order(integration, mapped_catalogue):
    result = import_order(TENANT, order_payload(), integration)
    return db.session.get(Order, result.order_id)


def refund_payload(refund_id=7001, restock=True, lines=None, adjustments=None):
    if lines is None:
        lines = [{
            'id': 1, 'line_item_id': 1, 'quantity': 1, 'subtotal': '30.00', 'total_tax': '5.70',
            'line_item': {'id': 1, 'variant_id': 101, 'sku': 'SKU-A', 'price': '30.00'},
        }]
    return {
        'id': refund_id,
        'order_id': 5001,
        'restock': restock,
        'refund_line_items': lines,
        'order_adjustments': adjustments or [],
    }


def test_restock_creates_one_return_movement(integration, imported_order, mapped_catalogue):
    mug, _ = mapped_catalogue
    result = process_refund(TENANT, refund_payload(restock=True), integration)

    movements = StockMovement.query.filter_by(type='return').all()
    assert len(movements) == 1
    assert movements[0].product_id == mug.id
    assert movements[0].quantity == 1
    assert movements[0].reference_id == result.return_id


def test_no_restock_means_no_stock_movement(integration, imported_order):
    process_refund(TENANT, refund_payload(restock=False), integration)
    assert StockMovement.query.filter_by(type='return').count() == 0
    assert Return.query.one().restock_items is False


def test_return_record_and_items(integration, imported_order):
    result = process_refund(TENANT, refund_payload(), integration)

    ret = db.session.get(Return, result.return_id)
    assert ret.order_id == imported_order.id
    assert ret.external_refund_id == '7001'
    assert ret.subtotal == Decimal('30.00')
    assert ret.tax_amount == Decimal('5.70')
    assert ret.total == Decimal('35.70')
    assert ret.original_number == str(imported_order.order_number)

    item = ReturnItem.query.one()
    assert item.order_item_id == imported_order.items[0].id
    assert item.unit_price == Decimal('30.00')
    assert item.tax_amount == Decimal('5.70')
    assert imported_order.has_returns is True


def test_same_refund_is_processed_once(integration, imported_order):
    first = process_refund(TENANT, refund_payload(), integration)
    second = process_refund(TENANT, refund_payload(), integration)

    assert second.duplicate is True
    assert second.return_id == first.return_id
    assert Return.query.count() == 1
    assert StockMovement.query.filter_by(type='return').count() == 1


def test_refund_for_unknown_order(integration):
    with pytest.raises(NotFoundError) as exc:
        process_refund(TENANT, refund_payload(), integration)
    assert exc.value.message == "Original order not found locally"
    assert Return.query.count() == 0


def test_shipping_refund_counts_as_positive():
    subtotal, tax = compute_refund_totals(refund_payload(adjustments=[
        {'kind': 'shipping_refund', 'amount': '-8.00', 'tax_amount': '-1.52'},
    ]))
    assert subtotal == Decimal('38.00')
    assert tax == Decimal('7.22')


def test_line_matched_by_position_when_sku_unknown(integration, imported_order):
    lines = [{
        'id': 2, 'line_item_id': 2, 'quantity': 1, 'subtotal': '40.00', 'total_tax': '7.60',
        'line_item': {'id': 2, 'variant_id': 102, 'sku': None, 'price': '40.00'},
    }]
    process_refund(TENANT, refund_payload(lines=lines), integration)

    item = ReturnItem.query.one()
    assert item.order_item_id == imported_order.items[1].id


def test_credit_note_queued_when_sale_had_fiscal_document(integration, imported_order):
    imported_order.fiscal_document_ref = 'CUFE-123'
    imported_order.document_prefix = 'SETP'
    imported_order.document_number = 990
    db.session.commit()

    result = process_refund(TENANT, refund_payload(), integration)

    ret = db.session.get(Return, result.return_id)
    assert ret.credit_note_status == 'queued'
    assert ret.original_number == 'SETP990'
    note = DocumentRequest.query.filter_by(kind='POS_CREDIT_NOTE').one()
    assert note.source_id == ret.id
    assert note.payload['originalDocumentRef'] == 'CUFE-123'
    assert note.payload['refundAmount'] == '35.70'


def test_no_credit_note_without_fiscal_document(integration, imported_order):
    result = process_refund(TENANT, refund_payload(), integration)

    assert db.session.get(Return, result.return_id).credit_note_status == 'not_required'
    assert DocumentRequest.query.filter_by(kind='POS_CREDIT_NOTE').count() == 0


def test_no_credit_note_when_documents_disabled(integration, imported_order):
    imported_order.fiscal_document_ref = 'CUFE-123'
    integration.generate_documents = False
    db.session.commit()

    process_refund(TENANT, refund_payload(), integration)
    assert DocumentRequest.query.filter_by(kind='POS_CREDIT_NOTE').count() == 0
