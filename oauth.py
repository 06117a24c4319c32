"""
Shopify OAuth (authorization code grant) for per-tenant custom apps.

An authorization attempt moves pending -> token-exchanged -> credentials-saved.
The pending step lives only in a StateStore; the callback consumes the state
exactly once.
"""

import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

import requests
from flask import current_app

from errors import DecryptionError, PlatformAPIError
from models import db, Integration
from vault import encrypt, decrypt

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 10 * 60
REFRESH_WINDOW_SECONDS = 5 * 60
TOKEN_REQUEST_TIMEOUT = 30

SHOPIFY_SCOPES = ",".join([
    "read_orders",
    "write_orders",
    "read_products",
    "write_products",
    "read_inventory",
    "write_inventory",
    "read_locations",
    "read_customers",
])


@dataclass(frozen=True)
class OAuthState:
    tenant_id: str
    nonce: str
    redirect_uri: str


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    scope: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    associated_user: Optional[dict] = None


class StateStore:
    """Time-bounded store for pending OAuth attempts"""

    def put(self, state: str, value: OAuthState, ttl: int) -> None:
        raise NotImplementedError

    def take_once(self, state: str) -> Optional[OAuthState]:
        raise NotImplementedError


class InMemoryStateStore(StateStore):
    """Process-local store; insert and delete-on-read happen under one lock."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[OAuthState, float]] = {}

    def put(self, state, value, ttl=STATE_TTL_SECONDS):
        with self._lock:
            self._sweep()
            self._entries[state] = (value, self._clock() + ttl)

    def take_once(self, state):
        with self._lock:
            self._sweep()
            entry = self._entries.pop(state, None)
        return entry[0] if entry else None

    def _sweep(self):
        now = self._clock()
        for key in [k for k, (_, expires) in self._entries.items() if expires <= now]:
            del self._entries[key]

    def __len__(self):
        with self._lock:
            self._sweep()
            return len(self._entries)


def get_state_store() -> StateStore:
    return current_app.extensions['oauth_state_store']


def clean_shop_domain(shop_domain):
    domain = (shop_domain or "").strip()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    return domain.rstrip("/")


def generate_authorization_url(tenant_id, shop_domain, client_id, redirect_uri, store=None):
    if store is None:
        store = get_state_store()
    nonce = secrets.token_hex(16)
    state = secrets.token_hex(32)
    store.put(state, OAuthState(tenant_id=tenant_id, nonce=nonce, redirect_uri=redirect_uri), STATE_TTL_SECONDS)

    query = urlencode([
        ("client_id", client_id),
        ("scope", SHOPIFY_SCOPES),
        ("redirect_uri", redirect_uri),
        ("state", state),
        ("grant_options[]", "per-user"),
    ])
    return f"https://{clean_shop_domain(shop_domain)}/admin/oauth/authorize?{query}"


def validate_callback_state(state, store=None) -> Optional[OAuthState]:
    """Consume a pending state. A second call with the same token returns None."""
    if not state:
        return None
    if store is None:
        store = get_state_store()
    return store.take_once(state)


def verify_callback_signature(params, client_secret):
    """Check the hmac Shopify appends to the callback query string."""
    provided = params.get('hmac')
    if not provided or not client_secret:
        return False

    message = "&".join(
        f"{key}={value}"
        for key, value in sorted(params.items())
        if key not in ('hmac', 'signature')
    )
    expected = hmac.new(client_secret.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).digest()

    try:
        received = bytes.fromhex(provided)
    except ValueError:
        return False
    if len(received) != len(expected):
        return False
    return hmac.compare_digest(expected, received)


def exchange_code_for_token(shop_domain, client_id, client_secret, code) -> TokenResponse:
    token_url = f"https://{clean_shop_domain(shop_domain)}/admin/oauth/access_token"
    logger.info("[Shopify OAuth] Exchanging code for token at %s", token_url)

    response = requests.post(
        token_url,
        json={"client_id": client_id, "client_secret": client_secret, "code": code},
        headers={"Accept": "application/json"},
        timeout=TOKEN_REQUEST_TIMEOUT,
    )
    if not response.ok:
        logger.error("[Shopify OAuth] Token exchange failed: %s %s", response.status_code, response.text)
        raise PlatformAPIError(response.status_code, response.text, method='POST', path='/admin/oauth/access_token')

    data = response.json()
    logger.info("[Shopify OAuth] Token exchange successful, scope: %s", data.get('scope'))
    return TokenResponse(
        access_token=data['access_token'],
        scope=data.get('scope', ''),
        expires_in=data.get('expires_in'),
        refresh_token=data.get('refresh_token'),
        associated_user=data.get('associated_user'),
    )


def token_expiry(expires_in):
    return datetime.utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None


def save_oauth_credentials(tenant_id, shop_domain, client_id, client_secret, token: TokenResponse):
    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration:
        integration = Integration(tenant_id=tenant_id)
        db.session.add(integration)

    integration.shop_domain = clean_shop_domain(shop_domain)
    integration.client_id_encrypted = encrypt(client_id)
    integration.client_secret_encrypted = encrypt(client_secret)
    integration.access_token_encrypted = encrypt(token.access_token)
    integration.refresh_token_encrypted = encrypt(token.refresh_token) if token.refresh_token else None
    integration.token_scope = token.scope
    integration.token_expires_at = token_expiry(token.expires_in)
    integration.is_active = True
    integration.clear_error()
    db.session.commit()

    logger.info("[Shopify OAuth] Credentials saved for tenant %s", tenant_id)
    return integration


def is_token_expiring_soon(integration, window=REFRESH_WINDOW_SECONDS, now=None):
    if not integration or not integration.token_expires_at:
        return False
    now = now or datetime.utcnow()
    return integration.token_expires_at < now + timedelta(seconds=window)


def refresh_access_token(tenant_id):
    """Rotate the access token. Returns the token to use, or None if refresh failed.

    The stored token is never removed on failure so the tenant can still fall
    back to re-authorizing manually.
    """
    integration = Integration.query.filter_by(tenant_id=tenant_id).first()
    if not integration or not integration.client_id_encrypted or not integration.client_secret_encrypted:
        logger.error("[Shopify OAuth] Cannot refresh token - missing OAuth credentials for tenant %s", tenant_id)
        return None

    try:
        if not integration.refresh_token_encrypted:
            logger.info("[Shopify OAuth] No refresh token for tenant %s - offline token kept", tenant_id)
            return decrypt(integration.access_token_encrypted) if integration.access_token_encrypted else None

        client_id = decrypt(integration.client_id_encrypted)
        client_secret = decrypt(integration.client_secret_encrypted)
        refresh_token = decrypt(integration.refresh_token_encrypted)
    except DecryptionError as e:
        logger.error("[Shopify OAuth] Stored credentials unreadable for tenant %s: %s", tenant_id, e)
        integration.record_error("Stored Shopify credentials could not be decrypted")
        db.session.commit()
        return None

    try:
        response = requests.post(
            f"https://{integration.shop_domain}/admin/oauth/access_token",
            json={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            timeout=TOKEN_REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        logger.error("[Shopify OAuth] Token refresh request failed for tenant %s: %s", tenant_id, e)
        integration.record_error(f"Token refresh failed: {e}")
        db.session.commit()
        return None

    if not response.ok:
        logger.error("[Shopify OAuth] Token refresh failed: %s %s", response.status_code, response.text)
        integration.record_error(f"Token refresh failed: {response.status_code}")
        db.session.commit()
        return None

    data = response.json()
    integration.access_token_encrypted = encrypt(data['access_token'])
    if data.get('refresh_token'):
        integration.refresh_token_encrypted = encrypt(data['refresh_token'])
    if data.get('expires_in'):
        integration.token_expires_at = token_expiry(data['expires_in'])
    integration.clear_error()
    db.session.commit()

    logger.info("[Shopify OAuth] Token refreshed for tenant %s", tenant_id)
    return data['access_token']
