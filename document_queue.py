"""
Fiscal document queue.

The electronic billing worker that turns these rows into fiscal documents
lives outside this service; the sync engine only enqueues requests.
"""

import logging
from datetime import datetime

from models import db, DocumentRequest

logger = logging.getLogger(__name__)

KIND_SALE = 'POS'
KIND_CREDIT_NOTE = 'POS_CREDIT_NOTE'

# Correction concept codes used on credit notes
CORRECTION_CONCEPTS = {
    'devolucion': 1,
    'anulacion': 2,
    'descuento': 3,
    'ajuste_precio': 4,
    'otros': 5,
}


def queue_document(tenant_id, kind, source_type, source_id, payload=None):
    request = DocumentRequest(
        tenant_id=tenant_id,
        kind=kind,
        source_type=source_type,
        source_id=source_id,
        payload=payload or {},
        status='queued',
        created_at=datetime.utcnow(),
    )
    db.session.add(request)
    db.session.commit()
    logger.info("[Documents] Queued %s for %s %s (tenant %s)", kind, source_type, source_id, tenant_id)
    return request


def queue_sale_document(tenant_id, order):
    return queue_document(tenant_id, KIND_SALE, 'sale', order.id, {'orderNumber': order.order_number})


def queue_credit_note(tenant_id, return_record, order, refund_reason, concept='devolucion'):
    payload = {
        'returnId': return_record.id,
        'orderId': order.id,
        'refundAmount': str(return_record.total),
        'refundReason': refund_reason,
        'originalDocumentRef': return_record.original_document_ref,
        'originalNumber': return_record.original_number,
        'originalDate': return_record.original_date.isoformat() if return_record.original_date else None,
        'correctionConceptId': CORRECTION_CONCEPTS[concept],
    }
    return queue_document(tenant_id, KIND_CREDIT_NOTE, 'refund', return_record.id, payload)
