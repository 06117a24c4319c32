import pytest

from errors import NotFoundError
from models import ProductMap
from product_mapping import (
    active_mappings,
    auto_map_products,
    create_manual_mapping,
    fetch_shopify_products,
    find_local_product,
    get_unmapped_local_products,
    remove_mapping,
    resolve_variant,
)

from conftest import TENANT
from fakes import FakeShopifyClient


def shopify_product(product_id, title, *variants):
    return {
        'id': product_id,
        'title': title,
        'variants': [
            {'id': vid, 'sku': sku, 'title': vtitle, 'price': '10.00', 'inventory_item_id': vid + 1000}
            for vid, sku, vtitle in variants
        ],
    }


@pytest.fixture
def catalogue():
    return FakeShopifyClient(products=[
        shopify_product(1, 'Mug', (11, 'SKU-1', 'Default Title')),
        shopify_product(2, 'Tee', (21, 'SKU-2', 'S'), (22, 'SKU-3', 'M')),
        shopify_product(3, 'Poster', (31, '', 'Default Title')),
        shopify_product(4, 'Sticker', (41, 'SKU-NOPE', 'Default Title')),
    ])


def test_auto_map_matches_by_sku(integration, make_product, catalogue):
    for i in (1, 2, 3):
        make_product(f'Local {i}', sku=f'SKU-{i}')

    result = auto_map_products(TENANT, client=catalogue)

    assert result.created == 3
    assert result.updated == 0
    assert sorted(u['variantId'] for u in result.unmapped) == ['31', '41']
    assert ProductMap.query.count() == 3
    tee_s = ProductMap.query.filter_by(shopify_variant_id='21').one()
    assert tee_s.auto_matched is True
    assert tee_s.shopify_variant_title == 'S'
    assert tee_s.shopify_inventory_item_id == '1021'
    assert ProductMap.query.filter_by(shopify_variant_id='11').one().shopify_variant_title is None


def test_auto_map_is_idempotent(integration, make_product, catalogue):
    make_product('Local 1', sku='SKU-1')
    auto_map_products(TENANT, client=catalogue)
    again = auto_map_products(TENANT, client=catalogue)

    assert (again.created, again.updated) == (0, 0)
    assert ProductMap.query.count() == 1


def test_auto_map_never_overrides_manual_mapping(integration, make_product, make_mapping, catalogue):
    make_product('By SKU', sku='SKU-1')
    chosen = make_product('Chosen by hand', sku='HAND')
    make_mapping(chosen, 11, auto_matched=False)

    result = auto_map_products(TENANT, client=catalogue)

    assert result.updated == 0
    assert ProductMap.query.filter_by(shopify_variant_id='11').one().product_id == chosen.id


def test_auto_map_repoints_stale_automatic_mapping(integration, make_product, make_mapping, catalogue):
    old = make_product('Old', sku='OLD')
    current = make_product('Current', sku='SKU-1')
    make_mapping(old, 11, auto_matched=True)

    result = auto_map_products(TENANT, client=catalogue)

    assert result.updated == 1
    assert ProductMap.query.filter_by(shopify_variant_id='11').one().product_id == current.id


def test_find_local_product_falls_back_to_barcode(app, make_product):
    product = make_product('Scanned', sku='LOCAL-SKU', barcode='7701234')
    assert find_local_product(TENANT, 'LOCAL-SKU').id == product.id
    assert find_local_product(TENANT, 'OTHER', barcode='7701234').id == product.id
    assert find_local_product(TENANT, '7701234').id == product.id
    assert find_local_product(TENANT, 'NOPE') is None


def test_find_local_product_is_tenant_scoped(app, make_product):
    make_product('Other tenant', sku='SKU-1', tenant_id='tenant-2')
    assert find_local_product(TENANT, 'SKU-1') is None


def test_manual_mapping_fetches_variant(integration, make_product, catalogue):
    product = make_product('Medium tee', sku='LOCAL-M')
    mapping = create_manual_mapping(TENANT, '22', product.id, client=catalogue)

    assert mapping.auto_matched is False
    assert mapping.shopify_product_id == '2'
    assert mapping.shopify_title == 'Tee'
    assert mapping.shopify_variant_title == 'M'
    assert mapping.shopify_sku == 'SKU-3'
    assert catalogue.calls_to('get_variant') == [('get_variant', '22')]


def test_manual_mapping_reactivates_existing_row(integration, make_product, make_mapping, catalogue):
    first = make_product('First', sku='A')
    second = make_product('Second', sku='B')
    mapping = make_mapping(first, 11, auto_matched=True)
    remove_mapping(TENANT, mapping.id)

    updated = create_manual_mapping(TENANT, 11, second.id, client=catalogue)

    assert updated.id == mapping.id
    assert updated.product_id == second.id
    assert updated.is_active is True
    assert updated.auto_matched is False
    assert catalogue.calls == []


def test_manual_mapping_unknown_product(integration, catalogue):
    with pytest.raises(NotFoundError) as exc:
        create_manual_mapping(TENANT, '22', 999, client=catalogue)
    assert exc.value.message == "Local product not found"


def test_manual_mapping_unknown_variant(integration, make_product, catalogue):
    product = make_product('Anything', sku='X')
    with pytest.raises(NotFoundError):
        create_manual_mapping(TENANT, '404', product.id, client=catalogue)


def test_remove_mapping_is_soft(integration, make_product, make_mapping):
    mapping = make_mapping(make_product('Mug', sku='A'), 11)
    remove_mapping(TENANT, mapping.id)

    assert ProductMap.query.count() == 1
    assert resolve_variant(TENANT, 11) is None
    assert active_mappings(TENANT) == []

    with pytest.raises(NotFoundError):
        remove_mapping('tenant-2', mapping.id)


def test_unmapped_local_products(integration, make_product, make_mapping):
    mapped = make_product('Mapped', sku='A')
    make_product('Lonely', sku='B')
    make_mapping(mapped, 11)

    assert [p['name'] for p in get_unmapped_local_products(TENANT)] == ['Lonely']


def test_fetch_shopify_products_marks_mapped_variants(integration, make_product, make_mapping, catalogue):
    product = make_product('Mug', sku='SKU-1')
    make_mapping(product, 11)

    products = fetch_shopify_products(TENANT, client=catalogue)

    mug = next(p for p in products if p['id'] == '1')
    assert mug['variants'][0]['isMapped'] is True
    assert mug['variants'][0]['mappedToProductId'] == product.id
    assert mug['variants'][0]['title'] == 'Mug'
    tee = next(p for p in products if p['id'] == '2')
    assert [v['isMapped'] for v in tee['variants']] == [False, False]
