import logging
from datetime import datetime

import requests

from errors import NotFoundError, PlatformAPIError
from models import db, Integration, Product, SyncLog
from order_import import money
from product_mapping import active_mappings
from shopify_client import SyncResult, get_shopify_client, log_sync_operation

logger = logging.getLogger(__name__)

DIRECTION = 'pos_to_shopify'


def _gate(tenant_id):
    """(integration, None) when price sync may run, else (None, skipped result)"""
    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration or not integration.is_active:
        return None, SyncResult.skipped("Shopify integration not active")
    if not integration.sync_prices:
        return None, SyncResult.skipped("Price sync disabled")
    return integration, None


def last_pushed_price(tenant_id, variant_id):
    log = (SyncLog.query
           .filter_by(tenant_id=tenant_id, entity_type='price', shopify_variant_id=variant_id, success=True)
           .order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
           .first())
    return log.new_value if log else None


def _push_prices(tenant_id, integration, pairs, client):
    result = SyncResult(True, "")
    for mapping, price in pairs:
        before = last_pushed_price(tenant_id, mapping.shopify_variant_id)
        try:
            response = client.update_variant_price(mapping.shopify_variant_id, price)
        except PlatformAPIError as e:
            result.failed += 1
            result.errors.append(f"{mapping.shopify_variant_id}: {e.message}")
            log_sync_operation(tenant_id, DIRECTION, 'price', mapping.product_id, mapping.shopify_variant_id,
                               before, price, False, e.message, {'status': e.status, 'body': e.body})
            continue
        except requests.RequestException as e:
            result.failed += 1
            result.errors.append(f"{mapping.shopify_variant_id}: {e}")
            log_sync_operation(tenant_id, DIRECTION, 'price', mapping.product_id, mapping.shopify_variant_id,
                               before, price, False, str(e))
            continue

        mapping.last_price_sync = datetime.utcnow()
        log_sync_operation(tenant_id, DIRECTION, 'price', mapping.product_id, mapping.shopify_variant_id,
                           before, price, True, response=response)
        result.processed += 1
        logger.info("[Shopify Price Sync] Variant %s price %s -> %s", mapping.shopify_variant_id, before, price)

    integration.last_sync_at = datetime.utcnow()
    if result.failed:
        integration.record_error(f"Price sync: {result.failed} items failed", count=result.failed)
    db.session.commit()

    result.success = result.failed == 0
    result.message = f"Synced {result.processed} prices, {result.failed} failed"
    return result


def sync_price(tenant_id, product_id, new_price=None, client=None) -> SyncResult:
    integration, skipped = _gate(tenant_id)
    if skipped:
        return skipped

    product = Product.query.filter_by(id=product_id, tenant_id=tenant_id).first()
    if not product:
        raise NotFoundError("Product not found")
    price = money(new_price if new_price is not None else product.price)

    mappings = active_mappings(tenant_id, product_id)
    if not mappings:
        return SyncResult(True, "Product not mapped to Shopify")

    client = client or get_shopify_client(tenant_id)
    if not client:
        return SyncResult(False, "Shopify client not initialized")
    return _push_prices(tenant_id, integration, [(m, price) for m in mappings], client)


def full_price_sync(tenant_id, client=None) -> SyncResult:
    logger.info("[Shopify Price Sync] Full sync for tenant %s", tenant_id)
    integration, skipped = _gate(tenant_id)
    if skipped:
        return skipped

    mappings = [m for m in active_mappings(tenant_id) if m.product and m.product.is_active]
    if not mappings:
        return SyncResult(True, "No products mapped for sync")

    client = client or get_shopify_client(tenant_id)
    if not client:
        return SyncResult(False, "Shopify client not initialized")
    return _push_prices(tenant_id, integration, [(m, money(m.product.price)) for m in mappings], client)


def on_price_change(tenant_id, product_id, new_price):
    """Hook for local price edits. Returns None when nothing needs pushing."""
    integration = Integration.query.filter_by(tenant_id=tenant_id, is_active=True, sync_prices=True).first()
    if not integration or not active_mappings(tenant_id, product_id):
        return None
    return sync_price(tenant_id, product_id, new_price)
