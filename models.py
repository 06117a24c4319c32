from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()

# --- SHOPIFY INTEGRATION ---

class Integration(db.Model):
    """One Shopify connection per tenant"""
    __tablename__ = 'shopify_integrations'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), unique=True, nullable=False)
    shop_domain = db.Column(db.String(255), index=True, nullable=False)  # e.g. mystore.myshopify.com

    # OAuth Credentials (vault ciphertext)
    client_id_encrypted = db.Column(db.Text)
    client_secret_encrypted = db.Column(db.Text)
    access_token_encrypted = db.Column(db.Text)
    refresh_token_encrypted = db.Column(db.Text)
    token_expires_at = db.Column(db.DateTime)
    token_scope = db.Column(db.Text)
    webhook_secret_encrypted = db.Column(db.Text)

    # Inventory target
    location_id = db.Column(db.String(50))

    # Feature toggles
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    sync_inventory = db.Column(db.Boolean, default=True, nullable=False)
    sync_prices = db.Column(db.Boolean, default=True, nullable=False)
    auto_import_orders = db.Column(db.Boolean, default=True, nullable=False)
    generate_documents = db.Column(db.Boolean, default=True, nullable=False)

    # Status
    last_error = db.Column(db.Text)
    error_count = db.Column(db.Integer, default=0, nullable=False)
    last_sync_at = db.Column(db.DateTime)
    last_webhook_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def record_error(self, message, count=1):
        self.last_error = message
        self.error_count = (self.error_count or 0) + count

    def clear_error(self):
        self.last_error = None
        self.error_count = 0

    def __repr__(self):
        return f"<Integration tenant={self.tenant_id} shop={self.shop_domain} active={self.is_active}>"

class ProductMap(db.Model):
    __tablename__ = 'shopify_product_map'
    __table_args__ = (db.UniqueConstraint('tenant_id', 'shopify_variant_id', name='uq_product_map_variant'),)
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)  # Tenant isolation
    shopify_product_id = db.Column(db.String(50), nullable=False)
    shopify_variant_id = db.Column(db.String(50), nullable=False)
    shopify_title = db.Column(db.String(255))
    shopify_variant_title = db.Column(db.String(255))
    shopify_sku = db.Column(db.String(100), index=True)
    shopify_inventory_item_id = db.Column(db.String(50))  # For inventory API calls
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'))
    auto_matched = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_inventory_sync = db.Column(db.DateTime)
    last_price_sync = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = db.relationship('Product')

class SyncLog(db.Model):
    """Append-only audit of outbound pushes"""
    __tablename__ = 'shopify_sync_logs'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    direction = db.Column(db.String(20), nullable=False)  # shopify_to_pos | pos_to_shopify
    entity_type = db.Column(db.String(20), nullable=False)  # inventory | price
    product_id = db.Column(db.Integer)
    shopify_variant_id = db.Column(db.String(50))
    previous_value = db.Column(db.String(50))
    new_value = db.Column(db.String(50))
    success = db.Column(db.Boolean, nullable=False)
    error_message = db.Column(db.Text)
    shopify_response = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

class WebhookLog(db.Model):
    __tablename__ = 'shopify_webhook_logs'
    __table_args__ = (db.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_webhook_idempotency'),)
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    topic = db.Column(db.String(64), nullable=False)  # e.g. orders/create
    shopify_event_id = db.Column(db.String(128))
    shopify_webhook_id = db.Column(db.String(128))
    idempotency_key = db.Column(db.String(128), nullable=False)
    shop_domain = db.Column(db.String(255))
    payload = db.Column(db.JSON)
    signature_valid = db.Column(db.Boolean, default=False, nullable=False)
    processed = db.Column(db.Boolean, default=False, nullable=False)
    processed_at = db.Column(db.DateTime)
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

class ShopifyOrder(db.Model):
    """Local mirror of a Shopify order and its import state"""
    __tablename__ = 'shopify_orders'
    __table_args__ = (db.UniqueConstraint('tenant_id', 'shopify_order_id', name='uq_shopify_order'),)
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    shopify_order_id = db.Column(db.String(50), nullable=False)
    shopify_order_number = db.Column(db.String(50))
    shopify_order_name = db.Column(db.String(50))  # e.g. "#1001"
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'))
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending | processing | completed | failed
    error_message = db.Column(db.Text)
    retry_count = db.Column(db.Integer, default=0, nullable=False)
    payload = db.Column(db.JSON)
    subtotal_price = db.Column(db.Numeric(12, 2))
    total_tax = db.Column(db.Numeric(12, 2))
    total_discounts = db.Column(db.Numeric(12, 2))
    total_price = db.Column(db.Numeric(12, 2))
    currency = db.Column(db.String(3))
    customer_email = db.Column(db.String(255))
    customer_phone = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    processed_at = db.Column(db.DateTime)

# --- POS CORE (owned by the transactional core, used here through its tables) ---

class TenantAddon(db.Model):
    __tablename__ = 'tenant_addons'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    addon_type = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(20), default='active', nullable=False)  # active | trial | cancelled
    trial_ends_at = db.Column(db.DateTime)

class Product(db.Model):
    __tablename__ = 'products'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(100), index=True)
    barcode = db.Column(db.String(100), index=True)
    price = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    track_inventory = db.Column(db.Boolean, default=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

class Customer(db.Model):
    __tablename__ = 'customers'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), index=True)
    phone = db.Column(db.String(50), index=True)
    address = db.Column(db.Text)

class Order(db.Model):
    __tablename__ = 'orders'
    __table_args__ = (db.UniqueConstraint('tenant_id', 'external_order_id', name='uq_order_external'),)
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    order_number = db.Column(db.Integer, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'))
    status = db.Column(db.String(20), default='completed', nullable=False)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    shipping_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3))
    notes = db.Column(db.Text)
    channel = db.Column(db.String(20), default='pos', nullable=False)  # pos | shopify | manual
    external_order_id = db.Column(db.String(50))
    has_returns = db.Column(db.Boolean, default=False, nullable=False)
    # Fiscal document issued for the sale, if any
    fiscal_document_ref = db.Column(db.String(128))
    document_prefix = db.Column(db.String(20))
    document_number = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    items = db.relationship('OrderItem', order_by='OrderItem.position', backref='order')

class OrderItem(db.Model):
    __tablename__ = 'order_items'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    position = db.Column(db.Integer, default=0, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    external_line_id = db.Column(db.String(50))
    notes = db.Column(db.Text)

class Payment(db.Model):
    __tablename__ = 'payments'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    method = db.Column(db.String(20), nullable=False)  # cash | card
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    reference = db.Column(db.String(255))

class StockMovement(db.Model):
    """Stock ledger: on-hand quantity is the sum of movements"""
    __tablename__ = 'stock_movements'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), index=True, nullable=False)
    type = db.Column(db.String(20), nullable=False)  # sale | return | adjustment | purchase
    quantity = db.Column(db.Integer, nullable=False)  # signed
    reference_id = db.Column(db.Integer)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

class Return(db.Model):
    __tablename__ = 'returns'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    return_number = db.Column(db.Integer, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'))
    external_refund_id = db.Column(db.String(50), index=True)
    status = db.Column(db.String(20), default='completed', nullable=False)
    reason = db.Column(db.String(50))
    reason_notes = db.Column(db.Text)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    refund_method = db.Column(db.String(20))
    restock_items = db.Column(db.Boolean, default=False, nullable=False)
    credit_note_status = db.Column(db.String(20))  # pending | queued | failed | not_required
    original_document_ref = db.Column(db.String(128))
    original_number = db.Column(db.String(50))
    original_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    items = db.relationship('ReturnItem', backref='return_record')

class ReturnItem(db.Model):
    __tablename__ = 'return_items'
    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey('returns.id'), nullable=False)
    order_item_id = db.Column(db.Integer, db.ForeignKey('order_items.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)

class DocumentRequest(db.Model):
    """Fiscal document queue (sales documents and credit notes)"""
    __tablename__ = 'document_requests'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), index=True, nullable=False)
    kind = db.Column(db.String(30), nullable=False)  # POS | POS_CREDIT_NOTE
    source_type = db.Column(db.String(20), nullable=False)  # sale | refund
    source_id = db.Column(db.Integer, nullable=False)
    payload = db.Column(db.JSON)
    status = db.Column(db.String(20), default='queued', nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
