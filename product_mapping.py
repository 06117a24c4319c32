"""
SKU based mapping between local products and Shopify variants.

The ProductMap table is the only place identity between the two catalogues
is decided; order import and both sync directions resolve through the
helpers at the bottom of this module.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from errors import CredentialError, NotFoundError
from models import db, Product, ProductMap
from shopify_client import get_shopify_client

logger = logging.getLogger(__name__)

DEFAULT_VARIANT_TITLE = "Default Title"


@dataclass
class MappingResult:
    created: int = 0
    updated: int = 0
    unmapped: List[dict] = field(default_factory=list)

    @property
    def message(self):
        return (f"Created {self.created} mappings, updated {self.updated}, "
                f"{len(self.unmapped)} products need manual mapping")

    def to_dict(self):
        return {
            'success': True,
            'message': self.message,
            'mappingsCreated': self.created,
            'mappingsUpdated': self.updated,
            'unmappedShopifyProducts': self.unmapped,
        }


def _client_or_raise(tenant_id, client):
    client = client or get_shopify_client(tenant_id)
    if not client:
        raise CredentialError("Shopify client not initialized")
    return client


def _variant_title(variant):
    title = variant.get('title')
    return title if title and title != DEFAULT_VARIANT_TITLE else None


def _display_title(product, variant):
    suffix = _variant_title(variant)
    return f"{product.get('title')} - {suffix}" if suffix else product.get('title')


def _unmapped_entry(product, variant):
    return {
        'productId': str(product['id']),
        'variantId': str(variant['id']),
        'title': _display_title(product, variant),
        'sku': variant.get('sku') or None,
    }


def find_local_product(tenant_id, sku, barcode=None):
    """Active local product by SKU, then by barcode."""
    base = Product.query.filter_by(tenant_id=tenant_id, is_active=True)
    product = base.filter(Product.sku == sku).first() if sku else None
    if not product:
        for code in (barcode, sku):
            if code:
                product = base.filter(Product.barcode == code).first()
                if product:
                    break
    return product


def auto_map_products(tenant_id, client=None) -> MappingResult:
    logger.info("[Shopify Product Mapping] Starting auto-map for tenant %s", tenant_id)
    client = _client_or_raise(tenant_id, client)
    result = MappingResult()

    for shopify_product in client.get_all_products():
        for variant in shopify_product.get('variants', []):
            sku = (variant.get('sku') or '').strip()
            if not sku:
                result.unmapped.append(_unmapped_entry(shopify_product, variant))
                continue

            local = find_local_product(tenant_id, sku, variant.get('barcode'))
            if not local:
                result.unmapped.append(_unmapped_entry(shopify_product, variant))
                continue

            variant_id = str(variant['id'])
            existing = ProductMap.query.filter_by(tenant_id=tenant_id, shopify_variant_id=variant_id).first()
            if existing:
                # Manual assignments win over SKU matches
                if existing.auto_matched and existing.product_id != local.id:
                    existing.product_id = local.id
                    existing.shopify_sku = sku
                    existing.shopify_inventory_item_id = str(variant.get('inventory_item_id') or '') or None
                    result.updated += 1
                continue

            db.session.add(ProductMap(
                tenant_id=tenant_id,
                shopify_product_id=str(shopify_product['id']),
                shopify_variant_id=variant_id,
                shopify_title=shopify_product.get('title'),
                shopify_variant_title=_variant_title(variant),
                shopify_sku=sku,
                shopify_inventory_item_id=str(variant.get('inventory_item_id') or '') or None,
                product_id=local.id,
                auto_matched=True,
            ))
            result.created += 1

    db.session.commit()
    logger.info("[Shopify Product Mapping] Auto-map complete: %s created, %s updated, %s unmapped",
                result.created, result.updated, len(result.unmapped))
    return result


def create_manual_mapping(tenant_id, shopify_variant_id, product_id, client=None) -> ProductMap:
    shopify_variant_id = str(shopify_variant_id)
    product = Product.query.filter_by(id=product_id, tenant_id=tenant_id).first()
    if not product:
        raise NotFoundError("Local product not found")

    existing = ProductMap.query.filter_by(tenant_id=tenant_id, shopify_variant_id=shopify_variant_id).first()
    if existing:
        existing.product_id = product.id
        existing.auto_matched = False
        existing.is_active = True
        db.session.commit()
        return existing

    client = _client_or_raise(tenant_id, client)
    variant = client.get_variant(shopify_variant_id)
    if not variant:
        raise NotFoundError("Shopify variant not found")
    shopify_product = client.get_product(variant['product_id']) or {}

    mapping = ProductMap(
        tenant_id=tenant_id,
        shopify_product_id=str(variant['product_id']),
        shopify_variant_id=shopify_variant_id,
        shopify_title=shopify_product.get('title'),
        shopify_variant_title=_variant_title(variant),
        shopify_sku=variant.get('sku') or None,
        shopify_inventory_item_id=str(variant.get('inventory_item_id') or '') or None,
        product_id=product.id,
        auto_matched=False,
    )
    db.session.add(mapping)
    db.session.commit()
    return mapping


def remove_mapping(tenant_id, mapping_id):
    mapping = ProductMap.query.filter_by(id=mapping_id, tenant_id=tenant_id).first()
    if not mapping:
        raise NotFoundError("Mapping not found")
    mapping.is_active = False
    db.session.commit()
    return mapping


def serialize_mapping(m: ProductMap):
    return {
        'id': m.id,
        'shopifyProductId': m.shopify_product_id,
        'shopifyVariantId': m.shopify_variant_id,
        'shopifyTitle': m.shopify_title,
        'shopifyVariantTitle': m.shopify_variant_title,
        'shopifySku': m.shopify_sku,
        'productId': m.product_id,
        'productName': m.product.name if m.product else None,
        'productSku': m.product.sku if m.product else None,
        'autoMatched': m.auto_matched,
        'isActive': m.is_active,
        'lastInventorySync': m.last_inventory_sync.isoformat() if m.last_inventory_sync else None,
        'lastPriceSync': m.last_price_sync.isoformat() if m.last_price_sync else None,
    }


def get_product_mappings(tenant_id):
    mappings = ProductMap.query.filter_by(tenant_id=tenant_id).order_by(ProductMap.created_at.desc()).all()
    return [serialize_mapping(m) for m in mappings]


def get_unmapped_local_products(tenant_id):
    mapped_ids = {
        row.product_id for row in
        ProductMap.query.filter_by(tenant_id=tenant_id, is_active=True).with_entities(ProductMap.product_id)
    }
    products = Product.query.filter_by(tenant_id=tenant_id, is_active=True).order_by(Product.name).all()
    return [
        {'id': p.id, 'name': p.name, 'sku': p.sku, 'price': str(p.price)}
        for p in products if p.id not in mapped_ids
    ]


def fetch_shopify_products(tenant_id, client=None):
    """Shopify catalogue annotated with the active mapping of each variant"""
    client = _client_or_raise(tenant_id, client)
    by_variant = {m.shopify_variant_id: m for m in active_mappings(tenant_id)}

    products = []
    for p in client.get_all_products():
        variants = []
        for v in p.get('variants', []):
            mapping = by_variant.get(str(v['id']))
            variants.append({
                'id': str(v['id']),
                'title': _variant_title(v) or p.get('title'),
                'sku': v.get('sku'),
                'price': v.get('price'),
                'inventoryItemId': str(v.get('inventory_item_id')),
                'isMapped': mapping is not None,
                'mappedToProductId': mapping.product_id if mapping else None,
            })
        products.append({'id': str(p['id']), 'title': p.get('title'), 'variants': variants})
    return products


# --- Identity resolution ---

def resolve_variant(tenant_id, shopify_variant_id) -> Optional[ProductMap]:
    if not shopify_variant_id:
        return None
    return ProductMap.query.filter_by(
        tenant_id=tenant_id, shopify_variant_id=str(shopify_variant_id), is_active=True
    ).filter(ProductMap.product_id.isnot(None)).first()


def active_mappings(tenant_id, product_id=None) -> List[ProductMap]:
    query = ProductMap.query.filter_by(tenant_id=tenant_id, is_active=True).filter(ProductMap.product_id.isnot(None))
    if product_id is not None:
        query = query.filter_by(product_id=product_id)
    return query.order_by(ProductMap.id).all()
