import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List

import requests
from flask import current_app

import oauth
from config import ClientConfig
from errors import DecryptionError, PlatformAPIError
from models import db, Integration, SyncLog
from vault import decrypt

logger = logging.getLogger(__name__)


def parse_retry_after(value, now=None):
    """Seconds to wait from a Retry-After header (delay-seconds or HTTP-date), or None"""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def get_client_config() -> ClientConfig:
    return current_app.extensions['shopify_client_config']


class ShopifyClient:
    """Per-tenant Shopify Admin REST client.

    Every public method is one authenticated request. Non-2xx answers raise
    PlatformAPIError; retrying is left to the caller.
    """

    def __init__(self, tenant_id, config=None):
        self.tenant_id = tenant_id
        self.config = config or get_client_config()
        self.shop_domain = ""
        self.access_token = ""
        self.location_id = None
        self.token_expires_at = None
        self.base_url = ""
        self.headers = {}

    def initialize(self):
        """Load and decrypt credentials. Returns False if the integration is not usable."""
        integration = Integration.query.filter_by(tenant_id=self.tenant_id).first()
        if not integration or not integration.is_active:
            logger.info("Tenant %s Shopify integration not active", self.tenant_id)
            return False
        if not integration.access_token_encrypted:
            logger.info("Tenant %s Shopify credentials not configured", self.tenant_id)
            return False

        try:
            self.access_token = decrypt(integration.access_token_encrypted)
        except DecryptionError as e:
            logger.error("Failed to decrypt credentials for tenant %s: %s", self.tenant_id, e)
            integration.last_error = "Stored Shopify credentials could not be decrypted"
            db.session.commit()
            return False

        self.shop_domain = integration.shop_domain
        self.location_id = integration.location_id
        self.token_expires_at = integration.token_expires_at

        if oauth.is_token_expiring_soon(integration, window=self.config.refresh_window):
            logger.info("Token expiring soon for tenant %s, attempting refresh", self.tenant_id)
            token = oauth.refresh_access_token(self.tenant_id)
            if token:
                self.access_token = token
            else:
                logger.warning("Token refresh failed for tenant %s, continuing with current token", self.tenant_id)

        self.base_url = f"https://{self.shop_domain}/admin/api/{self.config.api_version}"
        self.headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        return True

    def _request(self, method, path, params=None, payload=None):
        logger.info("[Shopify] %s %s", method, path)
        response = requests.request(
            method,
            f"{self.base_url}{path}",
            headers=self.headers,
            params=params,
            json=payload,
            timeout=self.config.timeout,
        )
        self._check_call_limit(response)

        if not response.ok:
            retry_after = response.headers.get('Retry-After')
            logger.error("Shopify API error %s on %s %s: %s", response.status_code, method, path, response.text)
            raise PlatformAPIError(
                response.status_code,
                response.text,
                method=method,
                path=path,
                retry_after=parse_retry_after(retry_after),
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _check_call_limit(self, response):
        # Header looks like "32/40"
        limit = response.headers.get('X-Shopify-Shop-Api-Call-Limit')
        if not limit:
            return
        try:
            used, bucket = (int(x) for x in limit.split('/'))
        except ValueError:
            return
        if bucket and used / bucket >= self.config.call_limit_warning:
            logger.warning("Shopify API call limit at %s for tenant %s", limit, self.tenant_id)

    # --- Orders ---

    def get_orders(self, limit=50, status='any', created_at_min=None, updated_at_min=None):
        params = {'limit': limit, 'status': status}
        if created_at_min:
            params['created_at_min'] = created_at_min.isoformat() if isinstance(created_at_min, datetime) else created_at_min
        if updated_at_min:
            params['updated_at_min'] = updated_at_min.isoformat() if isinstance(updated_at_min, datetime) else updated_at_min
        return self._request('GET', '/orders.json', params=params).get('orders', [])

    def get_order(self, order_id):
        return self._request('GET', f'/orders/{order_id}.json').get('order')

    # --- Products & Variants ---

    def get_products(self, limit=250, since_id=None):
        params = {'limit': limit}
        if since_id:
            params['since_id'] = since_id
        return self._request('GET', '/products.json', params=params).get('products', [])

    def get_all_products(self, page_size=250):
        """Walk the whole catalogue using since_id paging (one request per page)."""
        products, since_id = [], None
        while True:
            page = self.get_products(limit=page_size, since_id=since_id)
            products.extend(page)
            if len(page) < page_size:
                return products
            since_id = page[-1]['id']

    def get_product(self, product_id):
        return self._request('GET', f'/products/{product_id}.json').get('product')

    def get_variant(self, variant_id):
        return self._request('GET', f'/variants/{variant_id}.json').get('variant')

    def update_variant(self, variant_id, data):
        payload = {'variant': dict(data, id=int(variant_id))}
        return self._request('PUT', f'/variants/{variant_id}.json', payload=payload).get('variant')

    def update_variant_price(self, variant_id, price):
        return self.update_variant(variant_id, {'price': str(price)})

    # --- Locations ---

    def get_locations(self):
        return self._request('GET', '/locations.json').get('locations', [])

    def get_primary_location(self):
        locations = self.get_locations()
        active = [loc for loc in locations if loc.get('active')]
        return (active or locations or [None])[0]

    # --- Inventory ---

    def set_inventory_level(self, inventory_item_id, location_id, available):
        """Sets the absolute available quantity (not a delta)."""
        payload = {
            "location_id": int(location_id),
            "inventory_item_id": int(inventory_item_id),
            "available": int(available),
        }
        return self._request('POST', '/inventory_levels/set.json', payload=payload).get('inventory_level')

    def adjust_inventory_level(self, inventory_item_id, location_id, adjustment):
        payload = {
            "location_id": int(location_id),
            "inventory_item_id": int(inventory_item_id),
            "available_adjustment": int(adjustment),
        }
        return self._request('POST', '/inventory_levels/adjust.json', payload=payload).get('inventory_level')

    def get_inventory_levels(self, location_id, inventory_item_ids):
        params = {
            'location_ids': str(location_id),
            'inventory_item_ids': ','.join(str(i) for i in inventory_item_ids),
        }
        return self._request('GET', '/inventory_levels.json', params=params).get('inventory_levels', [])

    # --- Webhooks ---

    def register_webhook(self, topic, address):
        payload = {'webhook': {'topic': topic, 'address': address, 'format': 'json'}}
        return self._request('POST', '/webhooks.json', payload=payload).get('webhook')

    def get_webhooks(self):
        return self._request('GET', '/webhooks.json').get('webhooks', [])

    def delete_webhook(self, webhook_id):
        self._request('DELETE', f'/webhooks/{webhook_id}.json')


def get_shopify_client(tenant_id):
    """Initialized client for the tenant, or None when the integration is not usable"""
    client = ShopifyClient(tenant_id)
    return client if client.initialize() else None


def log_sync_operation(tenant_id, direction, entity_type, product_id, variant_id,
                       previous_value, new_value, success, error_message=None, response=None):
    db.session.add(SyncLog(
        tenant_id=tenant_id,
        direction=direction,
        entity_type=entity_type,
        product_id=product_id,
        shopify_variant_id=variant_id,
        previous_value=None if previous_value is None else str(previous_value),
        new_value=None if new_value is None else str(new_value),
        success=success,
        error_message=error_message,
        shopify_response=response,
        created_at=datetime.utcnow(),
    ))
    db.session.commit()


@dataclass
class SyncResult:
    """Outcome of one outbound batch (inventory or price)"""
    success: bool
    message: str
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    disabled: bool = False

    @classmethod
    def skipped(cls, message):
        return cls(success=False, message=message, disabled=True)

    def to_dict(self):
        return {
            'success': self.success,
            'message': self.message,
            'itemsProcessed': self.processed,
            'itemsFailed': self.failed,
            'errors': self.errors,
            'disabled': self.disabled,
        }
