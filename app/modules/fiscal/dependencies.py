"""
Dependencies for the fiscal module.

Provider client, blob store and key provider are process-wide singletons;
services are built per request around the request's session. Tests replace
any of these through ``app.dependency_overrides``.
"""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import settings
from app.database.database import get_db
from app.modules.files.service import MinIOService, get_minio_service
from app.modules.fiscal.client import FocusNFeClient
from app.modules.fiscal.reconciliation import ReconciliationService
from app.modules.fiscal.service import IntegrationService, ProvisioningService
from app.modules.fiscal.submission import SubmissionService
from app.modules.fiscal.vault import CertificateVault, KeyProvider, PassphraseCipher, SecretKeyProvider


@lru_cache(maxsize=1)
def get_provider_client() -> FocusNFeClient:
    return FocusNFeClient()


@lru_cache(maxsize=1)
def get_key_provider() -> KeyProvider:
    return SecretKeyProvider.from_settings()


def get_blob_store() -> MinIOService:
    return get_minio_service()


def get_webhook_secret() -> str:
    return settings.FOCUSNFE_WEBHOOK_SECRET


def get_certificate_vault(
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
    key_provider: KeyProvider = Depends(get_key_provider)
) -> CertificateVault:
    return CertificateVault(db, blob_store, PassphraseCipher(key_provider))


def get_integration_service(db: Session = Depends(get_db)) -> IntegrationService:
    return IntegrationService(db)


def get_submission_service(
    db: Session = Depends(get_db),
    client: FocusNFeClient = Depends(get_provider_client)
) -> SubmissionService:
    return SubmissionService(db, client)


def get_reconciliation_service(
    db: Session = Depends(get_db),
    client: FocusNFeClient = Depends(get_provider_client),
    webhook_secret: str = Depends(get_webhook_secret)
) -> ReconciliationService:
    return ReconciliationService(db, client, webhook_secret)


def get_provisioning_service(
    db: Session = Depends(get_db),
    client: FocusNFeClient = Depends(get_provider_client),
    vault: CertificateVault = Depends(get_certificate_vault)
) -> ProvisioningService:
    return ProvisioningService(db, client, vault)
