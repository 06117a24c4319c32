import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from errors import ConfigurationError, ValidationError

# load local .env if present
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def get_database_url() -> str:
    database_url = os.getenv('DATABASE_URL', 'sqlite:///local.db')
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+pg8000://", 1)
    return database_url


class Config:
    SQLALCHEMY_DATABASE_URI = get_database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Secret for credential encryption; the app refuses to start without one
    SHOPIFY_ENCRYPTION_KEY = os.getenv('SHOPIFY_ENCRYPTION_KEY') or os.getenv('SESSION_SECRET')
    SHOPIFY_API_VERSION = os.getenv('SHOPIFY_API_VERSION', '2024-01')
    SHOPIFY_API_TIMEOUT = int(os.getenv('SHOPIFY_API_TIMEOUT', '30'))

    APP_URL = os.getenv('APP_URL')  # e.g. https://pos.example.com
    SETTINGS_PAGE = os.getenv('SETTINGS_PAGE', '/settings/shopify')

    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    RECONCILE_INTERVAL_MINUTES = int(os.getenv('RECONCILE_INTERVAL_MINUTES', '30'))
    WEBHOOK_RETRY_INTERVAL_MINUTES = int(os.getenv('WEBHOOK_RETRY_INTERVAL_MINUTES', '10'))

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


@dataclass(frozen=True)
class VaultConfig:
    """Key material for the credential vault.

    secret: passphrase the per-message AES keys are derived from. Required.
    """
    secret: str

    def __post_init__(self):
        if not self.secret:
            raise ConfigurationError(
                "SHOPIFY_ENCRYPTION_KEY or SESSION_SECRET required for secure credential storage"
            )

    @classmethod
    def from_app_config(cls, config) -> 'VaultConfig':
        return cls(secret=config.get('SHOPIFY_ENCRYPTION_KEY') or '')


@dataclass(frozen=True)
class ClientConfig:
    """Settings shared by every per-tenant Shopify client.

    api_version: Admin API version segment of every URL.
    timeout: seconds before a single request is abandoned.
    refresh_window: seconds before expiry at which a token is refreshed.
    call_limit_warning: fraction of the API call bucket that triggers a warning.
    """
    api_version: str = '2024-01'
    timeout: int = 30
    refresh_window: int = 5 * 60
    call_limit_warning: float = 0.8

    def __post_init__(self):
        if not self.api_version:
            raise ConfigurationError("Shopify API version must be set")
        if self.timeout <= 0:
            raise ConfigurationError("Shopify API timeout must be positive")
        if not 0 < self.call_limit_warning <= 1:
            raise ConfigurationError("call_limit_warning must be within (0, 1]")

    @classmethod
    def from_app_config(cls, config) -> 'ClientConfig':
        return cls(
            api_version=config.get('SHOPIFY_API_VERSION', '2024-01'),
            timeout=int(config.get('SHOPIFY_API_TIMEOUT', 30)),
        )


_TOGGLES = ('sync_inventory', 'sync_prices', 'auto_import_orders', 'generate_documents', 'is_active')


@dataclass(frozen=True)
class IntegrationSettings:
    """User-editable behaviour of one tenant integration.

    sync_inventory: push absolute stock levels to Shopify.
    sync_prices: push local prices to the mapped variants.
    auto_import_orders: import order webhooks immediately instead of parking them as pending.
    generate_documents: queue fiscal documents (sales and credit notes).
    location_id: Shopify location that receives inventory levels.
    is_active: master switch; inactive integrations reject webhooks and skip syncs.
    """
    sync_inventory: bool = True
    sync_prices: bool = True
    auto_import_orders: bool = True
    generate_documents: bool = True
    location_id: Optional[str] = None
    is_active: bool = True

    def __post_init__(self):
        for name in _TOGGLES:
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be a boolean", field=name)
        if self.location_id is not None and not str(self.location_id).isdigit():
            raise ValidationError("location_id must be a numeric Shopify location id", field='location_id')

    @classmethod
    def from_integration(cls, integration) -> 'IntegrationSettings':
        return cls(
            sync_inventory=bool(integration.sync_inventory),
            sync_prices=bool(integration.sync_prices),
            auto_import_orders=bool(integration.auto_import_orders),
            generate_documents=bool(integration.generate_documents),
            location_id=integration.location_id,
            is_active=bool(integration.is_active),
        )

    def merge(self, data: dict) -> 'IntegrationSettings':
        """Return a copy with the recognised keys of ``data`` applied.

        Keys are accepted in snake_case or in the camelCase the settings UI sends.
        """
        aliases = {
            'syncInventory': 'sync_inventory',
            'syncPrices': 'sync_prices',
            'autoImportOrders': 'auto_import_orders',
            'generateDocuments': 'generate_documents',
            'locationId': 'location_id',
            'shopifyLocationId': 'location_id',
            'isActive': 'is_active',
        }
        values = {
            'sync_inventory': self.sync_inventory,
            'sync_prices': self.sync_prices,
            'auto_import_orders': self.auto_import_orders,
            'generate_documents': self.generate_documents,
            'location_id': self.location_id,
            'is_active': self.is_active,
        }
        for key, value in (data or {}).items():
            name = aliases.get(key, key)
            if name in values and value is not None:
                values[name] = str(value) if name == 'location_id' else value
        return IntegrationSettings(**values)

    def apply_to(self, integration) -> None:
        integration.sync_inventory = self.sync_inventory
        integration.sync_prices = self.sync_prices
        integration.auto_import_orders = self.auto_import_orders
        integration.generate_documents = self.generate_documents
        integration.location_id = self.location_id
        integration.is_active = self.is_active
