"""Error kinds raised by the sync engine.

Callers match on the class instead of parsing messages. Everything derives
from SyncError so the HTTP layer can map the whole family in one place.
"""


class SyncError(Exception):
    """Base class for every error raised by the Shopify sync engine"""
    http_status = 500
    code = 'sync_error'

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class ConfigurationError(SyncError):
    """Process-level configuration is missing or invalid (e.g. no encryption key)"""
    code = 'configuration_error'


class CredentialError(SyncError):
    """Stored credentials are missing or unusable; the integration counts as not configured"""
    http_status = 400
    code = 'credential_error'


class DecryptionError(CredentialError):
    """Ciphertext failed authentication or is malformed"""
    code = 'decryption_error'


class SignatureError(SyncError):
    """HMAC on a webhook or OAuth callback did not verify"""
    http_status = 400
    code = 'invalid_signature'


class PlatformAPIError(SyncError):
    """Shopify answered with a non-2xx status"""
    http_status = 502
    code = 'shopify_api_error'

    def __init__(self, status, body, method=None, path=None, retry_after=None):
        super().__init__(f"Shopify API error {status}: {body}")
        self.status = status
        self.body = body
        self.method = method
        self.path = path
        self.retry_after = retry_after

    def to_dict(self):
        data = super().to_dict()
        data['status'] = self.status
        return data


RemoteAPIError = PlatformAPIError


class DataIntegrityError(SyncError):
    """Inbound data cannot be applied consistently to the local ledger"""
    http_status = 422
    code = 'data_integrity_error'


class NotFoundError(DataIntegrityError):
    """A referenced record does not exist for the tenant"""
    http_status = 404
    code = 'not_found'


class DisabledError(SyncError):
    """The integration or the requested feature is switched off"""
    http_status = 409
    code = 'disabled'


class ValidationError(SyncError):
    """Caller-supplied input is invalid"""
    http_status = 400
    code = 'validation_error'

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field
