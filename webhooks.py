"""
Inbound Shopify webhooks.

Every verified delivery is written to WebhookLog before anything else runs.
The log row is keyed by an idempotency key so redeliveries of an event that
already went through are acknowledged without re-running side effects.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import CredentialError, DecryptionError, PlatformAPIError, SignatureError, SyncError, ValidationError
from models import db, Integration, WebhookLog
from oauth import clean_shop_domain
from order_import import handle_order_payload
from refunds import process_refund
from shopify_client import get_shopify_client
from vault import decrypt

logger = logging.getLogger(__name__)

TOPIC_HEADER = 'x-shopify-topic'
SHOP_HEADER = 'x-shopify-shop-domain'
HMAC_HEADER = 'x-shopify-hmac-sha256'
EVENT_ID_HEADER = 'x-shopify-event-id'
WEBHOOK_ID_HEADER = 'x-shopify-webhook-id'

ORDER_TOPICS = ('orders/create', 'orders/paid')
REFUND_TOPIC = 'refunds/create'
WEBHOOK_TOPICS = ORDER_TOPICS + (REFUND_TOPIC,)

RETRY_BATCH_SIZE = 50


@dataclass
class WebhookResult:
    success: bool
    message: str
    status_code: int = 200
    duplicate: bool = False
    log_id: Optional[int] = None

    def to_dict(self):
        return {
            'success': self.success,
            'message': self.message,
            'duplicate': self.duplicate,
            'logId': self.log_id,
        }


@dataclass
class RetryResult:
    processed: int = 0
    failed: int = 0

    def __add__(self, other):
        return RetryResult(self.processed + other.processed, self.failed + other.failed)

    def to_dict(self):
        return {'success': True, 'processed': self.processed, 'failed': self.failed}


@dataclass
class RegistrationResult:
    registered: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        if self.errors:
            message = f"Registered {len(self.registered)} webhooks with {len(self.errors)} errors"
        else:
            message = f"Successfully registered {len(self.registered)} webhooks"
        return {
            'success': not self.errors,
            'message': message,
            'registered': self.registered,
            'skipped': self.skipped,
            'errors': self.errors,
        }


def topic_from_slug(slug):
    return slug.replace('-', '/')


def topic_to_slug(topic):
    return topic.replace('/', '-')


def verify_webhook_signature(raw_body: bytes, hmac_header, secret):
    """Check X-Shopify-Hmac-Sha256 (base64 HMAC-SHA256 of the exact request bytes)"""
    if not hmac_header or not secret:
        return False
    digest = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).digest()
    try:
        received = base64.b64decode(hmac_header, validate=True)
    except (binascii.Error, ValueError):
        return False
    return hmac.compare_digest(digest, received)


def idempotency_key(topic, raw_body: bytes, event_id=None, webhook_id=None):
    if event_id:
        return str(event_id)
    if webhook_id:
        return str(webhook_id)
    digest = hashlib.sha256(topic.encode('utf-8') + b'\n' + raw_body).hexdigest()
    return f"sha256:{digest}"


def _signing_secret(integration):
    encrypted = integration.webhook_secret_encrypted or integration.client_secret_encrypted
    if not encrypted:
        raise CredentialError("Webhook signing secret not configured")
    try:
        return decrypt(encrypted)
    except DecryptionError:
        integration.record_error("Stored Shopify credentials could not be decrypted")
        db.session.commit()
        raise


def handle_webhook(raw_body: bytes, headers, verify=True, topic=None) -> WebhookResult:
    """Verify, record and dispatch one delivery.

    Validation and signature problems raise (400 at the HTTP layer); a failed
    dispatch is returned as an unsuccessful result with status 500 so Shopify
    redelivers it.
    """
    h = {k.lower(): v for k, v in headers.items()}
    topic = topic or h.get(TOPIC_HEADER)
    shop_domain = h.get(SHOP_HEADER)
    hmac_header = h.get(HMAC_HEADER)

    if not topic or not shop_domain or (verify and not hmac_header):
        raise ValidationError("Missing required Shopify webhook headers")

    integration = Integration.query.filter_by(shop_domain=clean_shop_domain(shop_domain)).first()
    if not integration:
        logger.warning("[Shopify Webhook] Unknown shop: %s", shop_domain)
        raise ValidationError("Unknown shop domain")
    if not integration.is_active:
        raise ValidationError("Integration inactive")

    if verify and not verify_webhook_signature(raw_body, hmac_header, _signing_secret(integration)):
        logger.warning("[Shopify Webhook] SECURITY: invalid HMAC for %s from %s", topic, shop_domain)
        raise SignatureError("Invalid webhook signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Invalid JSON payload")

    tenant_id = integration.tenant_id
    key = idempotency_key(topic, raw_body, h.get(EVENT_ID_HEADER), h.get(WEBHOOK_ID_HEADER))

    log = WebhookLog.query.filter_by(tenant_id=tenant_id, idempotency_key=key).first()
    if log and log.processed:
        logger.info("[Shopify Webhook] Duplicate: %s %s already processed", topic, key)
        return WebhookResult(True, "Webhook already processed", duplicate=True, log_id=log.id)

    if not log:
        log = WebhookLog(
            tenant_id=tenant_id,
            topic=topic,
            shopify_event_id=h.get(EVENT_ID_HEADER),
            shopify_webhook_id=h.get(WEBHOOK_ID_HEADER),
            idempotency_key=key,
            shop_domain=integration.shop_domain,
            payload=payload,
            signature_valid=verify,
            processed=False,
            created_at=datetime.utcnow(),
        )
        db.session.add(log)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event inserted first
            db.session.rollback()
            logger.info("[Shopify Webhook] Duplicate: %s %s is being processed", topic, key)
            return WebhookResult(True, "Webhook already being processed", duplicate=True)

    integration.last_webhook_at = datetime.utcnow()
    db.session.commit()
    return process_webhook_log(integration, log)


def dispatch(integration, topic, payload):
    """Run the handler for a topic. Returns a message, raises on failure."""
    if topic in ORDER_TOPICS:
        return handle_order_payload(integration.tenant_id, payload, integration).message
    if topic == REFUND_TOPIC:
        return process_refund(integration.tenant_id, payload, integration).message
    logger.info("[Shopify Webhook] Unhandled topic: %s", topic)
    return f"Topic {topic} acknowledged but not processed"


def _record_failure(integration, log, log_id, message):
    log.error_message = message
    integration.record_error(f"Webhook {log.topic} failed: {message}")
    db.session.commit()
    return WebhookResult(False, message, status_code=500, log_id=log_id)


def process_webhook_log(integration, log) -> WebhookResult:
    log_id = log.id
    topic = log.topic
    try:
        message = dispatch(integration, topic, log.payload)
    except (SyncError, SQLAlchemyError) as e:
        db.session.rollback()
        message = e.message if isinstance(e, SyncError) else f"Database error: {e}"
        logger.error("[Shopify Webhook] Error processing %s (log %s): %s", topic, log_id, message)
        return _record_failure(integration, log, log_id, message)
    except Exception as e:
        # Payload shapes the handlers do not expect (missing keys, bad numbers)
        db.session.rollback()
        logger.exception("[Shopify Webhook] Unexpected error processing %s (log %s)", topic, log_id)
        return _record_failure(integration, log, log_id, f"{type(e).__name__}: {e}")

    log.processed = True
    log.processed_at = datetime.utcnow()
    log.error_message = None
    db.session.commit()
    return WebhookResult(True, message, log_id=log_id)


def retry_failed_webhooks(tenant_id, limit=RETRY_BATCH_SIZE) -> RetryResult:
    """Replay unprocessed deliveries; their signatures were checked when first received"""
    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration or not integration.is_active:
        return RetryResult()

    logs = (WebhookLog.query
            .filter_by(tenant_id=tenant_id, processed=False)
            .filter(WebhookLog.payload.isnot(None))
            .order_by(WebhookLog.created_at)
            .limit(limit)
            .all())

    result = RetryResult()
    for log in logs:
        log_id = log.id
        try:
            ok = process_webhook_log(integration, log).success
        except SQLAlchemyError:
            # Recording the failure itself failed
            db.session.rollback()
            logger.exception("[Shopify Webhook] Retry of log %s failed", log_id)
            ok = False
        if ok:
            result.processed += 1
        else:
            result.failed += 1
    if logs:
        logger.info("[Shopify Webhook] Retry for tenant %s: %s processed, %s failed",
                    tenant_id, result.processed, result.failed)
    return result


def retry_all_failed_webhooks() -> RetryResult:
    total = RetryResult()
    for tenant_id in [i.tenant_id for i in Integration.query.filter_by(is_active=True).all()]:
        try:
            total = total + retry_failed_webhooks(tenant_id)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("[Shopify Webhook] Retry sweep failed for tenant %s", tenant_id)
    return total


def register_all_webhooks(tenant_id, base_url, client=None) -> RegistrationResult:
    client = client or get_shopify_client(tenant_id)
    if not client:
        raise CredentialError("Shopify client not initialized")

    existing = {(w.get('topic'), w.get('address')) for w in client.get_webhooks()}
    result = RegistrationResult()
    for topic in WEBHOOK_TOPICS:
        address = f"{base_url.rstrip('/')}/api/shopify/webhook/{topic_to_slug(topic)}"
        if (topic, address) in existing:
            result.skipped.append(topic)
            continue
        try:
            client.register_webhook(topic, address)
            result.registered.append(topic)
        except PlatformAPIError as e:
            logger.error("[Shopify Webhook] Failed to register %s: %s", topic, e.message)
            result.errors.append(f"{topic}: {e.message}")
    return result
