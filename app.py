import logging
import threading
import time
from datetime import datetime
from functools import wraps
from urllib.parse import urlencode

import requests
import schedule
from flask import Blueprint, Flask, g, jsonify, redirect, request, current_app

from config import Config, ClientConfig, IntegrationSettings, VaultConfig
from errors import CredentialError, NotFoundError, SyncError, ValidationError
from inventory_sync import full_inventory_sync, run_inventory_reconciliation
from models import db, Integration, ShopifyOrder, SyncLog, TenantAddon, WebhookLog
from oauth import (
    InMemoryStateStore,
    clean_shop_domain,
    exchange_code_for_token,
    generate_authorization_url,
    save_oauth_credentials,
    validate_callback_state,
    verify_callback_signature,
)
from order_import import import_pending_order, poll_recent_orders
from price_sync import full_price_sync
from product_mapping import (
    auto_map_products,
    create_manual_mapping,
    fetch_shopify_products,
    get_product_mappings,
    get_unmapped_local_products,
    remove_mapping,
    serialize_mapping,
)
from shopify_client import get_shopify_client
from vault import Vault, decrypt, encrypt
from webhooks import handle_webhook, register_all_webhooks, retry_all_failed_webhooks, retry_failed_webhooks, topic_from_slug

logger = logging.getLogger(__name__)

SHOPIFY_ADDON = 'shopify_integration'
LOG_PAGE_SIZE = 100

shopify_bp = Blueprint('shopify', __name__, url_prefix='/api/shopify')

# --- HELPERS ---

def require_addon(view):
    """Tenant routes need X-Tenant-ID and an active (or unexpired trial) Shopify add-on"""
    @wraps(view)
    def wrapper(*args, **kwargs):
        tenant_id = request.headers.get('X-Tenant-ID')
        if not tenant_id:
            return jsonify({'error': 'Tenant ID required'}), 400

        addon = (TenantAddon.query
                 .filter_by(tenant_id=tenant_id, addon_type=SHOPIFY_ADDON)
                 .filter(TenantAddon.status.in_(('active', 'trial')))
                 .first())
        if not addon:
            return jsonify({'error': 'Shopify integration requires a paid add-on subscription',
                            'code': 'ADDON_REQUIRED'}), 403
        if addon.status == 'trial' and addon.trial_ends_at and addon.trial_ends_at < datetime.utcnow():
            return jsonify({'error': 'Your Shopify integration trial has expired. Please upgrade to continue.',
                            'code': 'TRIAL_EXPIRED'}), 403

        g.tenant_id = tenant_id
        return view(*args, **kwargs)
    return wrapper


def get_integration_or_404(tenant_id):
    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration:
        raise NotFoundError("Shopify not configured")
    return integration


def require_client(tenant_id):
    client = get_shopify_client(tenant_id)
    if not client:
        raise CredentialError("Shopify not configured or not active")
    return client


def base_url():
    return (current_app.config.get('APP_URL') or request.host_url).rstrip('/')


def settings_redirect(**params):
    return redirect(f"{current_app.config['SETTINGS_PAGE']}?{urlencode(params)}")


def json_body():
    return request.get_json(silent=True) or {}


def _iso(value):
    return value.isoformat() if value else None


def serialize_integration(i: Integration):
    settings = IntegrationSettings.from_integration(i)
    return {
        'shopDomain': i.shop_domain,
        'isActive': settings.is_active,
        'syncInventory': settings.sync_inventory,
        'syncPrices': settings.sync_prices,
        'autoImportOrders': settings.auto_import_orders,
        'generateDocuments': settings.generate_documents,
        'shopifyLocationId': settings.location_id,
        'hasAccessToken': bool(i.access_token_encrypted),
        'tokenScope': i.token_scope,
        'tokenExpiresAt': _iso(i.token_expires_at),
        'lastError': i.last_error,
        'errorCount': i.error_count,
        'lastSyncAt': _iso(i.last_sync_at),
        'lastWebhookAt': _iso(i.last_webhook_at),
    }


def serialize_order(o: ShopifyOrder):
    return {
        'id': o.id,
        'shopifyOrderId': o.shopify_order_id,
        'shopifyOrderNumber': o.shopify_order_number,
        'shopifyOrderName': o.shopify_order_name,
        'orderId': o.order_id,
        'status': o.status,
        'errorMessage': o.error_message,
        'retryCount': o.retry_count,
        'totalPrice': str(o.total_price) if o.total_price is not None else None,
        'currency': o.currency,
        'customerEmail': o.customer_email,
        'createdAt': _iso(o.created_at),
        'processedAt': _iso(o.processed_at),
    }


def serialize_sync_log(log: SyncLog):
    return {
        'id': log.id,
        'direction': log.direction,
        'entityType': log.entity_type,
        'productId': log.product_id,
        'shopifyVariantId': log.shopify_variant_id,
        'previousValue': log.previous_value,
        'newValue': log.new_value,
        'success': log.success,
        'errorMessage': log.error_message,
        'createdAt': _iso(log.created_at),
    }


def serialize_webhook_log(log: WebhookLog):
    return {
        'id': log.id,
        'topic': log.topic,
        'idempotencyKey': log.idempotency_key,
        'shopDomain': log.shop_domain,
        'signatureValid': log.signature_valid,
        'processed': log.processed,
        'processedAt': _iso(log.processed_at),
        'errorMessage': log.error_message,
        'createdAt': _iso(log.created_at),
    }

# --- WEBHOOKS (HMAC verified, no tenant header) ---

@shopify_bp.route('/webhook/<topic>', methods=['POST'])
def webhook(topic):
    topic = topic_from_slug(topic)
    logger.info("[Shopify Webhook] Received %s", topic)
    result = handle_webhook(request.get_data(), request.headers, topic=topic)
    return jsonify(result.to_dict()), result.status_code

# --- OAUTH ---

@shopify_bp.route('/oauth/authorize', methods=['POST'])
@require_addon
def oauth_authorize():
    data = json_body()
    shop_domain = data.get('shopDomain')
    client_id = data.get('clientId')
    client_secret = data.get('clientSecret')
    if not shop_domain or not client_id or not client_secret:
        raise ValidationError("Shop domain, client ID, and client secret are required")

    integration = Integration.query.filter_by(tenant_id=g.tenant_id).first()
    if not integration:
        integration = Integration(tenant_id=g.tenant_id, is_active=False)
        db.session.add(integration)
    integration.shop_domain = clean_shop_domain(shop_domain)
    integration.client_id_encrypted = encrypt(client_id)
    integration.client_secret_encrypted = encrypt(client_secret)
    db.session.commit()

    redirect_uri = f"{base_url()}/api/shopify/oauth/callback"
    auth_url = generate_authorization_url(g.tenant_id, shop_domain, client_id, redirect_uri)
    return jsonify({
        'success': True,
        'authUrl': auth_url,
        'message': 'Redirect user to authUrl to complete OAuth flow',
    })


@shopify_bp.route('/oauth/callback')
def oauth_callback():
    args = request.args.to_dict()
    if args.get('error'):
        logger.error("[Shopify OAuth] Error from Shopify: %s - %s", args['error'], args.get('error_description'))
        return settings_redirect(shopify_error=args['error'])

    code, state, shop = args.get('code'), args.get('state'), args.get('shop')
    if not code or not state or not shop:
        return settings_redirect(shopify_error='missing_parameters')

    pending = validate_callback_state(state)
    if not pending:
        logger.error("[Shopify OAuth] Invalid or expired state")
        return settings_redirect(shopify_error='invalid_state')
    tenant_id = pending.tenant_id

    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration or not integration.client_id_encrypted or not integration.client_secret_encrypted:
        logger.error("[Shopify OAuth] Missing stored credentials for tenant %s", tenant_id)
        return settings_redirect(shopify_error='missing_credentials')

    try:
        client_id = decrypt(integration.client_id_encrypted)
        client_secret = decrypt(integration.client_secret_encrypted)

        if not verify_callback_signature(args, client_secret):
            logger.warning("[Shopify OAuth] SECURITY: HMAC verification failed for tenant %s", tenant_id)
            return settings_redirect(shopify_error='invalid_signature')

        if clean_shop_domain(shop).lower() != (integration.shop_domain or '').lower():
            logger.warning("[Shopify OAuth] SECURITY: callback shop %s does not match %s for tenant %s",
                           shop, integration.shop_domain, tenant_id)
            return settings_redirect(shopify_error='shop_mismatch')

        token = exchange_code_for_token(shop, client_id, client_secret, code)
        save_oauth_credentials(tenant_id, shop, client_id, client_secret, token)
    except SyncError as e:
        logger.error("[Shopify OAuth] Callback failed for tenant %s: %s", tenant_id, e.message)
        return settings_redirect(shopify_error=e.code)
    except requests.RequestException as e:
        logger.error("[Shopify OAuth] Token request failed for tenant %s: %s", tenant_id, e)
        return settings_redirect(shopify_error='network_error')

    try:
        registration = register_all_webhooks(tenant_id, base_url())
        logger.info("[Shopify OAuth] Webhook registration: %s registered, %s errors",
                    len(registration.registered), len(registration.errors))
    except (SyncError, requests.RequestException) as e:
        # Webhooks can be registered later from the settings page
        logger.error("[Shopify OAuth] Failed to register webhooks: %s", e)

    logger.info("[Shopify OAuth] Connected tenant %s", tenant_id)
    return settings_redirect(shopify_success='true')

# --- CONFIG & STATUS ---

@shopify_bp.route('/config', methods=['GET'])
@require_addon
def get_config():
    return jsonify(serialize_integration(get_integration_or_404(g.tenant_id)))


@shopify_bp.route('/config', methods=['POST'])
@require_addon
def save_config():
    """Manual setup with an Admin API access token (no OAuth)"""
    data = json_body()
    shop_domain = data.get('shopDomain')
    access_token = data.get('accessToken')
    if not shop_domain or not access_token:
        raise ValidationError("Shop domain and access token are required")

    integration = Integration.query.filter_by(tenant_id=g.tenant_id).first()
    if not integration:
        integration = Integration(tenant_id=g.tenant_id)
        db.session.add(integration)
        settings = IntegrationSettings()
    else:
        settings = IntegrationSettings.from_integration(integration)
    settings = settings.merge(dict(data, isActive=True))

    integration.shop_domain = clean_shop_domain(shop_domain)
    integration.access_token_encrypted = encrypt(access_token)
    if data.get('webhookSecret'):
        integration.webhook_secret_encrypted = encrypt(data['webhookSecret'])
    settings.apply_to(integration)
    integration.clear_error()
    db.session.commit()
    return jsonify({'success': True, 'message': 'Shopify configuration saved'})


@shopify_bp.route('/config', methods=['PATCH'])
@require_addon
def update_config():
    integration = get_integration_or_404(g.tenant_id)
    settings = IntegrationSettings.from_integration(integration).merge(json_body())
    settings.apply_to(integration)
    db.session.commit()
    return jsonify({'success': True, 'message': 'Settings updated'})


@shopify_bp.route('/status', methods=['GET'])
@require_addon
def status():
    integration = Integration.query.filter_by(tenant_id=g.tenant_id).first()
    if not integration or not integration.access_token_encrypted or not integration.is_active:
        return jsonify({'configured': False, 'isActive': False})

    counts = dict(db.session.query(ShopifyOrder.status, db.func.count(ShopifyOrder.id))
                  .filter(ShopifyOrder.tenant_id == g.tenant_id)
                  .group_by(ShopifyOrder.status)
                  .all())
    stats = {
        'totalOrders': sum(counts.values()),
        'completedOrders': counts.get('completed', 0),
        'failedOrders': counts.get('failed', 0),
        'pendingOrders': counts.get('pending', 0) + counts.get('processing', 0),
    }
    return jsonify(dict(serialize_integration(integration), configured=True, stats=stats))

# --- WEBHOOK MANAGEMENT ---

@shopify_bp.route('/webhooks', methods=['GET'])
@require_addon
def list_webhooks():
    webhooks = require_client(g.tenant_id).get_webhooks()
    return jsonify({'webhooks': [
        {'id': w.get('id'), 'topic': w.get('topic'), 'address': w.get('address'), 'createdAt': w.get('created_at')}
        for w in webhooks
    ]})


@shopify_bp.route('/webhooks/register', methods=['POST'])
@require_addon
def register_webhooks():
    result = register_all_webhooks(g.tenant_id, base_url(), client=require_client(g.tenant_id))
    return jsonify(result.to_dict())


@shopify_bp.route('/webhooks/retry', methods=['POST'])
@require_addon
def retry_webhooks():
    return jsonify(retry_failed_webhooks(g.tenant_id).to_dict())


@shopify_bp.route('/webhook-logs', methods=['GET'])
@require_addon
def webhook_logs():
    logs = (WebhookLog.query.filter_by(tenant_id=g.tenant_id)
            .order_by(WebhookLog.created_at.desc()).limit(LOG_PAGE_SIZE).all())
    return jsonify({'logs': [serialize_webhook_log(log) for log in logs]})

# --- ORDERS ---

@shopify_bp.route('/sync/orders', methods=['POST'])
@require_addon
def sync_orders():
    try:
        hours = int(json_body().get('hours', 24))
    except (TypeError, ValueError):
        raise ValidationError("hours must be a whole number", field='hours')
    if hours < 1:
        raise ValidationError("hours must be positive", field='hours')
    result = poll_recent_orders(g.tenant_id, hours=hours, client=require_client(g.tenant_id))
    return jsonify(result.to_dict())


@shopify_bp.route('/orders', methods=['GET'])
@require_addon
def list_orders():
    orders = (ShopifyOrder.query.filter_by(tenant_id=g.tenant_id)
              .order_by(ShopifyOrder.created_at.desc()).limit(LOG_PAGE_SIZE).all())
    return jsonify({'orders': [serialize_order(o) for o in orders]})


@shopify_bp.route('/orders/<int:mirror_id>/retry', methods=['POST'])
@require_addon
def retry_order(mirror_id):
    return jsonify(import_pending_order(g.tenant_id, mirror_id).to_dict())

# --- PRODUCT MAPPING ---

@shopify_bp.route('/mappings', methods=['GET'])
@require_addon
def list_mappings():
    return jsonify(get_product_mappings(g.tenant_id))


@shopify_bp.route('/mappings', methods=['POST'])
@require_addon
def create_mapping():
    data = json_body()
    variant_id = data.get('shopifyVariantId')
    product_id = data.get('productId')
    if not variant_id or not product_id:
        raise ValidationError("shopifyVariantId and productId are required")
    mapping = create_manual_mapping(g.tenant_id, variant_id, product_id)
    return jsonify({'success': True, 'mapping': serialize_mapping(mapping)})


@shopify_bp.route('/mappings/auto', methods=['POST'])
@require_addon
def auto_map():
    return jsonify(auto_map_products(g.tenant_id).to_dict())


@shopify_bp.route('/mappings/<int:mapping_id>', methods=['DELETE'])
@require_addon
def delete_mapping(mapping_id):
    remove_mapping(g.tenant_id, mapping_id)
    return jsonify({'success': True, 'message': 'Mapping removed'})


@shopify_bp.route('/unmapped-products', methods=['GET'])
@require_addon
def unmapped_products():
    return jsonify(get_unmapped_local_products(g.tenant_id))


@shopify_bp.route('/products', methods=['GET'])
@require_addon
def shopify_products():
    return jsonify(fetch_shopify_products(g.tenant_id))

# --- SYNC ---

@shopify_bp.route('/sync/inventory', methods=['POST'])
@require_addon
def sync_inventory_route():
    return jsonify(full_inventory_sync(g.tenant_id).to_dict())


@shopify_bp.route('/sync/prices', methods=['POST'])
@require_addon
def sync_prices_route():
    return jsonify(full_price_sync(g.tenant_id).to_dict())


@shopify_bp.route('/sync-logs', methods=['GET'])
@require_addon
def sync_logs():
    logs = (SyncLog.query.filter_by(tenant_id=g.tenant_id)
            .order_by(SyncLog.created_at.desc()).limit(LOG_PAGE_SIZE).all())
    return jsonify({'logs': [serialize_sync_log(log) for log in logs]})


@shopify_bp.route('/locations', methods=['GET'])
@require_addon
def locations():
    return jsonify({'locations': require_client(g.tenant_id).get_locations()})


@shopify_bp.route('/disconnect', methods=['DELETE'])
@require_addon
def disconnect():
    """Deactivate and wipe credentials; the row stays for the audit trail"""
    integration = get_integration_or_404(g.tenant_id)
    integration.is_active = False
    integration.access_token_encrypted = None
    integration.client_id_encrypted = None
    integration.client_secret_encrypted = None
    integration.refresh_token_encrypted = None
    integration.webhook_secret_encrypted = None
    integration.token_scope = None
    integration.token_expires_at = None
    db.session.commit()
    logger.info("[Shopify] Tenant %s disconnected", g.tenant_id)
    return jsonify({'success': True, 'message': 'Shopify disconnected'})

# --- ERRORS ---

def handle_sync_error(e: SyncError):
    if e.http_status >= 500:
        logger.error("[Shopify] %s: %s", type(e).__name__, e.message)
    return jsonify(e.to_dict()), e.http_status


def handle_request_error(e: requests.RequestException):
    logger.error("[Shopify] Request to Shopify failed: %s", e)
    return jsonify({'error': 'Request to Shopify failed', 'code': 'network_error'}), 502

# --- SCHEDULER TASKS ---

def task_reconcile_inventory(app):
    with app.app_context():
        try:
            run_inventory_reconciliation()
        except Exception:
            logger.exception("[Scheduler] Inventory reconciliation failed")
            db.session.rollback()


def task_retry_webhooks(app):
    with app.app_context():
        try:
            result = retry_all_failed_webhooks()
            if result.processed or result.failed:
                logger.info("[Scheduler] Webhook retry: %s processed, %s failed", result.processed, result.failed)
        except Exception:
            logger.exception("[Scheduler] Webhook retry failed")
            db.session.rollback()


def run_schedule(app):
    schedule.every(app.config['RECONCILE_INTERVAL_MINUTES']).minutes.do(
        lambda: threading.Thread(target=task_reconcile_inventory, args=(app,)).start())
    schedule.every(app.config['WEBHOOK_RETRY_INTERVAL_MINUTES']).minutes.do(
        lambda: threading.Thread(target=task_retry_webhooks, args=(app,)).start())
    while True:
        schedule.run_pending()
        time.sleep(1)


def start_scheduler(app):
    t = threading.Thread(target=run_schedule, args=(app,), daemon=True)
    t.start()
    return t

# --- APP FACTORY ---

def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(level=app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(app)

    # Fails here when no encryption key is configured
    app.extensions['credential_vault'] = Vault(VaultConfig.from_app_config(app.config))
    app.extensions['shopify_client_config'] = ClientConfig.from_app_config(app.config)
    app.extensions['oauth_state_store'] = InMemoryStateStore()

    app.register_blueprint(shopify_bp)
    app.register_error_handler(SyncError, handle_sync_error)
    app.register_error_handler(requests.RequestException, handle_request_error)

    @app.route('/')
    def health():
        return jsonify({'status': 'ok'}), 200

    if app.config.get('SCHEDULER_ENABLED'):
        start_scheduler(app)
    return app


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
    app.run(debug=True)
