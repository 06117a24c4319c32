import base64
import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from app import create_app
from config import Config
from models import db as _db, Integration, Product, ProductMap, StockMovement, TenantAddon
from vault import encrypt

from fakes import FakeShopifyClient

TENANT = 'tenant-1'
SHOP = 'test-shop.myshopify.com'
CLIENT_SECRET = 'shpss_test_client_secret'
ACCESS_TOKEN = 'shpat_test_token'


class ConfigForTests(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SHOPIFY_ENCRYPTION_KEY = 'test-encryption-key'
    SCHEDULER_ENABLED = False
    APP_URL = 'https://pos.example.com'
    SETTINGS_PAGE = '/settings/shopify'


@pytest.fixture
def app():
    app = create_app(ConfigForTests)
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def integration(app):
    integration = Integration(
        tenant_id=TENANT,
        shop_domain=SHOP,
        client_id_encrypted=encrypt('client-id'),
        client_secret_encrypted=encrypt(CLIENT_SECRET),
        access_token_encrypted=encrypt(ACCESS_TOKEN),
        token_scope='read_orders,write_inventory',
        location_id='111',
        is_active=True,
    )
    _db.session.add(integration)
    _db.session.commit()
    return integration


@pytest.fixture
def addon(app):
    addon = TenantAddon(tenant_id=TENANT, addon_type='shopify_integration', status='active')
    _db.session.add(addon)
    _db.session.commit()
    return addon


@pytest.fixture
def tenant_headers():
    return {'X-Tenant-ID': TENANT}


@pytest.fixture
def make_product(app):
    def _make(name, sku=None, price='10.00', barcode=None, track_inventory=True, tenant_id=TENANT, stock=None):
        product = Product(tenant_id=tenant_id, name=name, sku=sku, barcode=barcode,
                          price=Decimal(price), track_inventory=track_inventory, is_active=True)
        _db.session.add(product)
        _db.session.flush()
        if stock is not None:
            _db.session.add(StockMovement(tenant_id=tenant_id, product_id=product.id, type='purchase', quantity=stock))
        _db.session.commit()
        return product
    return _make


@pytest.fixture
def make_mapping(app):
    def _make(product, variant_id, inventory_item_id=None, shopify_product_id='9000', auto_matched=False,
              tenant_id=TENANT):
        mapping = ProductMap(
            tenant_id=tenant_id,
            shopify_product_id=str(shopify_product_id),
            shopify_variant_id=str(variant_id),
            shopify_sku=product.sku,
            shopify_inventory_item_id=str(inventory_item_id) if inventory_item_id else None,
            product_id=product.id,
            auto_matched=auto_matched,
        )
        _db.session.add(mapping)
        _db.session.commit()
        return mapping
    return _make


@pytest.fixture
def shopify():
    return FakeShopifyClient()


def sign(body: bytes, secret=CLIENT_SECRET):
    return base64.b64encode(hmac.new(secret.encode('utf-8'), body, hashlib.sha256).digest()).decode()


@pytest.fixture
def webhook_request():
    """Build (raw_body, headers) for a signed delivery"""
    def _build(topic, payload, event_id=None, webhook_id=None, secret=CLIENT_SECRET, shop=SHOP):
        body = json.dumps(payload).encode('utf-8')
        headers = {
            'X-Shopify-Topic': topic,
            'X-Shopify-Shop-Domain': shop,
            'X-Shopify-Hmac-Sha256': sign(body, secret),
        }
        if event_id:
            headers['X-Shopify-Event-Id'] = event_id
        if webhook_id:
            headers['X-Shopify-Webhook-Id'] = webhook_id
        return body, headers
    return _build


def order_payload(order_id=5001, lines=None, **overrides):
    """Shopify order: two lines, 60 + 40 with 19 tax by default"""
    if lines is None:
        lines = [
            {'id': 1, 'variant_id': 101, 'sku': 'SKU-A', 'title': 'Mug', 'price': '30.00', 'quantity': 2,
             'tax_lines': [{'price': '11.40'}]},
            {'id': 2, 'variant_id': 102, 'sku': 'SKU-B', 'title': 'Tee', 'price': '40.00', 'quantity': 1,
             'tax_lines': [{'price': '7.60'}]},
        ]
    payload = {
        'id': order_id,
        'order_number': 1001,
        'name': '#1001',
        'email': 'ana@example.com',
        'currency': 'USD',
        'subtotal_price': '100.00',
        'total_tax': '19.00',
        'total_discounts': '0.00',
        'total_price': '119.00',
        'taxes_included': False,
        'payment_gateway_names': ['shopify_payments'],
        'customer': {'first_name': 'Ana', 'last_name': 'Diaz', 'email': 'ana@example.com'},
        'line_items': lines,
        'shipping_lines': [],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def mapped_catalogue(make_product, make_mapping):
    """Products for the two lines of order_payload()"""
    mug = make_product('Mug', sku='SKU-A', price='30.00', stock=10)
    tee = make_product('Tee', sku='SKU-B', price='40.00', stock=5)
    make_mapping(mug, 101, inventory_item_id=201)
    make_mapping(tee, 102, inventory_item_id=202)
    return mug, tee
