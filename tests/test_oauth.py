import hashlib
import hmac
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest

import oauth
from errors import PlatformAPIError
from models import Integration
from oauth import (
    InMemoryStateStore,
    OAuthState,
    TokenResponse,
    generate_authorization_url,
    is_token_expiring_soon,
    refresh_access_token,
    save_oauth_credentials,
    validate_callback_state,
    verify_callback_signature,
)
from vault import decrypt, encrypt

from conftest import ACCESS_TOKEN, SHOP, TENANT
from fakes import FakeResponse


def signed_params(params, secret):
    message = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
    return dict(params, hmac=hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest())


def test_authorization_url_contains_grant_parameters(app):
    store = InMemoryStateStore()
    url = generate_authorization_url(TENANT, 'https://my-shop.myshopify.com/', 'cid', 'https://pos/cb', store=store)

    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert parsed.netloc == 'my-shop.myshopify.com'
    assert parsed.path == '/admin/oauth/authorize'
    assert query['client_id'] == ['cid']
    assert query['redirect_uri'] == ['https://pos/cb']
    assert query['grant_options[]'] == ['per-user']
    assert 'write_inventory' in query['scope'][0]
    assert len(query['state'][0]) == 64
    assert len(store) == 1


def test_empty_injected_store_is_used_without_app_context():
    store = InMemoryStateStore()
    assert len(store) == 0

    url = generate_authorization_url(TENANT, SHOP, 'cid', 'https://pos/cb', store=store)
    state = parse_qs(urlparse(url).query)['state'][0]

    assert len(store) == 1
    assert validate_callback_state(state, store=store).tenant_id == TENANT
    assert len(store) == 0


def test_state_is_single_use(app):
    store = InMemoryStateStore()
    url = generate_authorization_url(TENANT, SHOP, 'cid', 'https://pos/cb', store=store)
    state = parse_qs(urlparse(url).query)['state'][0]

    first = validate_callback_state(state, store=store)
    assert isinstance(first, OAuthState)
    assert first.tenant_id == TENANT
    assert first.redirect_uri == 'https://pos/cb'
    assert validate_callback_state(state, store=store) is None


def test_unknown_or_empty_state_is_rejected():
    store = InMemoryStateStore()
    assert validate_callback_state('nope', store=store) is None
    assert validate_callback_state('', store=store) is None


def test_state_expires_after_ten_minutes():
    now = [1000.0]
    store = InMemoryStateStore(clock=lambda: now[0])
    store.put('s1', OAuthState(TENANT, 'n', 'r'), ttl=oauth.STATE_TTL_SECONDS)
    store.put('s2', OAuthState(TENANT, 'n', 'r'), ttl=oauth.STATE_TTL_SECONDS)

    now[0] += 599
    assert store.take_once('s1') is not None
    now[0] += 2
    assert store.take_once('s2') is None
    assert len(store) == 0


def test_callback_signature():
    params = signed_params({'code': 'abc', 'shop': SHOP, 'state': 'xyz', 'timestamp': '1700000000'}, 'secret')
    assert verify_callback_signature(params, 'secret') is True
    assert verify_callback_signature(params, 'other') is False
    assert verify_callback_signature(dict(params, code='tampered'), 'secret') is False


@pytest.mark.parametrize('bad', ['', 'zz', 'abcd', None])
def test_callback_signature_malformed(bad):
    params = {'code': 'abc', 'shop': SHOP}
    if bad is not None:
        params['hmac'] = bad
    assert verify_callback_signature(params, 'secret') is False


def test_exchange_code_for_token(monkeypatch):
    captured = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        captured.update(url=url, json=json)
        return FakeResponse(200, {'access_token': 'shpat_new', 'scope': 'read_orders', 'expires_in': 86400,
                                  'refresh_token': 'refresh-1'})

    monkeypatch.setattr(oauth.requests, 'post', fake_post)
    token = oauth.exchange_code_for_token('https://' + SHOP, 'cid', 'csecret', 'the-code')

    assert captured['url'] == f'https://{SHOP}/admin/oauth/access_token'
    assert captured['json'] == {'client_id': 'cid', 'client_secret': 'csecret', 'code': 'the-code'}
    assert token.access_token == 'shpat_new'
    assert token.refresh_token == 'refresh-1'
    assert token.expires_in == 86400


def test_exchange_code_failure_raises(monkeypatch):
    monkeypatch.setattr(oauth.requests, 'post', lambda *a, **kw: FakeResponse(400, text='invalid_request'))
    with pytest.raises(PlatformAPIError) as exc:
        oauth.exchange_code_for_token(SHOP, 'cid', 'csecret', 'bad-code')
    assert exc.value.status == 400
    assert exc.value.body == 'invalid_request'


def test_save_credentials_activates_and_clears_errors(app, db):
    db.session.add(Integration(tenant_id=TENANT, shop_domain=SHOP, is_active=False,
                               last_error='old failure', error_count=3))
    db.session.commit()

    token = TokenResponse(access_token='shpat_saved', scope='read_orders', expires_in=3600, refresh_token='r1')
    integration = save_oauth_credentials(TENANT, 'https://' + SHOP + '/', 'cid', 'csecret', token)

    assert integration.is_active is True
    assert integration.shop_domain == SHOP
    assert integration.last_error is None
    assert integration.error_count == 0
    assert decrypt(integration.access_token_encrypted) == 'shpat_saved'
    assert decrypt(integration.refresh_token_encrypted) == 'r1'
    assert integration.token_expires_at > datetime.utcnow()


def test_expiring_soon_window():
    now = datetime(2024, 1, 1, 12, 0, 0)
    integration = Integration(token_expires_at=now + timedelta(minutes=4))
    assert is_token_expiring_soon(integration, now=now) is True
    integration.token_expires_at = now + timedelta(minutes=6)
    assert is_token_expiring_soon(integration, now=now) is False
    integration.token_expires_at = None
    assert is_token_expiring_soon(integration, now=now) is False


def test_refresh_without_refresh_token_returns_current_token(integration):
    assert refresh_access_token(TENANT) == ACCESS_TOKEN


def test_refresh_missing_credentials_returns_none(integration, db):
    integration.client_secret_encrypted = None
    db.session.commit()
    assert refresh_access_token(TENANT) is None


def test_refresh_success_rotates_tokens(integration, db, monkeypatch):
    integration.refresh_token_encrypted = encrypt('refresh-old')
    db.session.commit()
    monkeypatch.setattr(oauth.requests, 'post', lambda *a, **kw: FakeResponse(
        200, {'access_token': 'shpat_rotated', 'refresh_token': 'refresh-new', 'expires_in': 7200}))

    assert refresh_access_token(TENANT) == 'shpat_rotated'
    assert decrypt(integration.access_token_encrypted) == 'shpat_rotated'
    assert decrypt(integration.refresh_token_encrypted) == 'refresh-new'


def test_refresh_failure_keeps_old_token_and_counts_error(integration, db, monkeypatch):
    integration.refresh_token_encrypted = encrypt('refresh-old')
    db.session.commit()
    monkeypatch.setattr(oauth.requests, 'post', lambda *a, **kw: FakeResponse(401, text='unauthorized'))

    assert refresh_access_token(TENANT) is None
    assert decrypt(integration.access_token_encrypted) == ACCESS_TOKEN
    assert integration.error_count == 1
    assert '401' in integration.last_error
