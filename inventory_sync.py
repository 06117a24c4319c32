"""
Push local stock levels to Shopify.

Levels are pushed as absolute values (inventory_levels/set), so the last
writer wins. The Shopify level that gets overwritten is kept in the sync log
as previous_value.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

import requests

from errors import PlatformAPIError
from models import db, Integration, StockMovement
from product_mapping import active_mappings
from shopify_client import SyncResult, get_shopify_client, log_sync_operation

logger = logging.getLogger(__name__)

DIRECTION = 'pos_to_shopify'
LEVELS_BATCH_SIZE = 50  # Shopify caps inventory_item_ids per request


@dataclass
class ReconciliationResult:
    tenants_processed: int = 0
    items_synced: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'tenantsProcessed': self.tenants_processed,
            'totalItemsSynced': self.items_synced,
            'errors': self.errors,
        }


def current_stock(tenant_id, product_id):
    """On-hand quantity: the sum of the product's stock movements"""
    total = (db.session.query(db.func.coalesce(db.func.sum(StockMovement.quantity), 0))
             .filter(StockMovement.tenant_id == tenant_id, StockMovement.product_id == product_id)
             .scalar())
    return int(total or 0)


def fetch_previous_levels(client, location_id, inventory_item_ids):
    levels = {}
    for start in range(0, len(inventory_item_ids), LEVELS_BATCH_SIZE):
        chunk = inventory_item_ids[start:start + LEVELS_BATCH_SIZE]
        try:
            for level in client.get_inventory_levels(location_id, chunk):
                levels[str(level.get('inventory_item_id'))] = level.get('available')
        except (PlatformAPIError, requests.RequestException) as e:
            # Only used for the audit trail
            logger.warning("[Shopify Inventory Sync] Could not read current levels: %s", e)
    return levels


def sync_inventory(tenant_id, product_id=None, client=None) -> SyncResult:
    logger.info("[Shopify Inventory Sync] Starting sync for tenant %s", tenant_id)

    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration or not integration.is_active:
        return SyncResult.skipped("Shopify integration not active")
    if not integration.sync_inventory:
        return SyncResult.skipped("Inventory sync disabled")
    location_id = integration.location_id
    if not location_id:
        return SyncResult.skipped("No Shopify location configured")

    mappings = [m for m in active_mappings(tenant_id, product_id) if m.shopify_inventory_item_id]
    if not mappings:
        return SyncResult(True, "No products mapped for sync")

    client = client or get_shopify_client(tenant_id)
    if not client:
        return SyncResult(False, "Shopify client not initialized")

    previous = fetch_previous_levels(client, location_id, [m.shopify_inventory_item_id for m in mappings])
    result = SyncResult(True, "")

    for mapping in mappings:
        stock = current_stock(tenant_id, mapping.product_id)
        before = previous.get(mapping.shopify_inventory_item_id)
        try:
            response = client.set_inventory_level(mapping.shopify_inventory_item_id, location_id, stock)
        except PlatformAPIError as e:
            result.failed += 1
            result.errors.append(f"{mapping.shopify_variant_id}: {e.message}")
            log_sync_operation(tenant_id, DIRECTION, 'inventory', mapping.product_id, mapping.shopify_variant_id,
                               before, stock, False, e.message, {'status': e.status, 'body': e.body})
            continue
        except requests.RequestException as e:
            result.failed += 1
            result.errors.append(f"{mapping.shopify_variant_id}: {e}")
            log_sync_operation(tenant_id, DIRECTION, 'inventory', mapping.product_id, mapping.shopify_variant_id,
                               before, stock, False, str(e))
            continue

        mapping.last_inventory_sync = datetime.utcnow()
        log_sync_operation(tenant_id, DIRECTION, 'inventory', mapping.product_id, mapping.shopify_variant_id,
                           before, stock, True, response=response)
        result.processed += 1
        logger.info("[Shopify Inventory Sync] inventory_item %s set to %s (was %s)",
                    mapping.shopify_inventory_item_id, stock, before)

    integration.last_sync_at = datetime.utcnow()
    if result.failed:
        integration.record_error(f"Inventory sync: {result.failed} items failed", count=result.failed)
    db.session.commit()

    result.success = result.failed == 0
    result.message = f"Synced {result.processed} items, {result.failed} failed"
    return result


def on_stock_change(tenant_id, product_id):
    """Hook for local stock mutations. Returns None when nothing needs pushing."""
    integration = Integration.query.filter_by(tenant_id=tenant_id, is_active=True, sync_inventory=True).first()
    if not integration or not active_mappings(tenant_id, product_id):
        return None
    return sync_inventory(tenant_id, product_id)


def full_inventory_sync(tenant_id, client=None) -> SyncResult:
    return sync_inventory(tenant_id, client=client)


def run_inventory_reconciliation() -> ReconciliationResult:
    """Push every mapped product of every inventory-enabled tenant"""
    result = ReconciliationResult()
    for integration in Integration.query.filter_by(is_active=True, sync_inventory=True).all():
        tenant_result = sync_inventory(integration.tenant_id)
        result.tenants_processed += 1
        result.items_synced += tenant_result.processed
        result.errors.extend(f"{integration.tenant_id}: {e}" for e in tenant_result.errors)
        if not tenant_result.success and not tenant_result.errors:
            result.errors.append(f"{integration.tenant_id}: {tenant_result.message}")

    logger.info("[Shopify Inventory Sync] Reconciliation complete: %s tenants, %s items synced",
                result.tenants_processed, result.items_synced)
    return result
