"""
Error taxonomy for the fiscal module.

Each error knows its category and HTTP status so routers and the exception
handler in ``app.main`` can render a uniform body.
"""
from typing import Any, Optional
from uuid import UUID


class FiscalError(Exception):
    category = "internal"
    status_code = 500

    def __init__(self, message: str, *, fiscal_document_id: Optional[UUID] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.fiscal_document_id = fiscal_document_id
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "category": self.category}
        if self.fiscal_document_id is not None:
            body["fiscal_document_id"] = str(self.fiscal_document_id)
        if self.details is not None:
            body["details"] = self.details
        return body


class ConfigurationError(FiscalError):
    """Missing/disabled integration, missing secret, unprovisioned company"""
    category = "configuration"
    status_code = 400


class ValidationError(FiscalError):
    category = "validation"
    status_code = 400


class NotFoundError(FiscalError):
    category = "not_found"
    status_code = 404


class ConflictError(FiscalError):
    category = "conflict"
    status_code = 409


class SignatureError(FiscalError):
    category = "signature"
    status_code = 401


class ProviderError(FiscalError):
    """Non-2xx answer from the provider outside the document pipeline (provisioning)"""
    category = "provider"
    status_code = 400


class TransportError(FiscalError):
    """No HTTP answer at all: timeout, DNS failure, connection reset"""
    category = "transport"
    status_code = 500


class PersistenceError(FiscalError):
    category = "persistence"
    status_code = 500


class VaultDecryptionError(FiscalError):
    """Ciphertext failed authentication: wrong key, wrong version or tampered data"""
    category = "configuration"
    status_code = 500
