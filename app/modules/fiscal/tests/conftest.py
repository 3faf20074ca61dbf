"""
Fixtures for the fiscal module tests

Settings are read at import time, so the environment is prepared before
anything under ``app`` is imported. Every test gets a fresh in-memory SQLite
schema, a scripted provider client and an in-memory blob store.
"""
import os

os.environ.setdefault("FISCAL_CERT_ENCRYPTION_KEY", "test-encryption-secret")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("FOCUSNFE_WEBHOOK_SECRET", None)

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from app.main import app
from app.database.database import Base, SessionLocal, engine, get_db
from app.modules.fiscal.client import ProviderResponse
from app.modules.fiscal.dependencies import get_blob_store, get_provider_client, get_webhook_secret
from app.modules.fiscal.models import Environment
from app.modules.fiscal.schemas import IntegrationUpsert
from app.modules.fiscal.service import IntegrationService

TEST_CNPJ = "11222333000181"
CERT_PASSWORD = "cert-pass"


class FakeFocusClient:
    """
    Scripted stand-in for FocusNFeClient.

    Queued items (ProviderResponse or an exception instance) are consumed in
    order; ``by_ref`` answers status checks for a given ref. ``during_call``
    runs inside the call, before the answer is returned.
    """

    def __init__(self):
        self.queue = []
        self.by_ref = {}
        self.calls = []
        self.during_call = None

    def respond(self, status_code, body=None):
        self.queue.append(ProviderResponse(status_code=status_code, body=body))

    def fail(self, exc):
        self.queue.append(exc)

    def _answer(self, call, ref=None):
        self.calls.append(call)
        if self.during_call is not None:
            hook, self.during_call = self.during_call, None
            hook()
        if ref is not None and ref in self.by_ref:
            item = self.by_ref[ref]
        elif self.queue:
            item = self.queue.pop(0)
        else:
            item = ProviderResponse(status_code=202, body={"status": "processando_autorizacao"})
        if isinstance(item, Exception):
            raise item
        return item

    def submit_document(self, environment, token, doc_type, ref, payload):
        return self._answer({
            "method": "submit", "environment": environment, "token": token,
            "doc_type": doc_type, "ref": ref, "payload": payload,
        })

    def fetch_status(self, environment, token, doc_type, ref, completa=None):
        return self._answer({
            "method": "status", "environment": environment, "token": token,
            "doc_type": doc_type, "ref": ref, "completa": completa,
        }, ref=ref)

    def save_company(self, environment, token, empresa, company_id=None):
        return self._answer({
            "method": "company", "environment": environment, "token": token,
            "empresa": empresa, "company_id": company_id,
        })


class FakeBlobStore:
    def __init__(self):
        self.objects = {}

    def upload_bytes(self, bucket_name, key, data, content_type):
        self.objects[(bucket_name, key)] = (data, content_type)
        return key

    def download_bytes(self, bucket_name, key):
        return self.objects[(bucket_name, key)][0]

    def remove_object(self, bucket_name, key):
        self.objects.pop((bucket_name, key), None)


def build_pkcs12(password: str = CERT_PASSWORD, cnpj: str = TEST_CNPJ) -> bytes:
    """Self-signed e-CNPJ style container"""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, f"EMPRESA TESTE LTDA:{cnpj}")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(
        b"teste", key, cert, None, serialization.BestAvailableEncryption(password.encode("utf-8"))
    )


# ===== FIXTURES =====

@pytest.fixture
def db_session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def fake_provider():
    return FakeFocusClient()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def webhook_secret():
    return None


@pytest.fixture
def client(db_session, fake_provider, blob_store, webhook_secret):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_provider_client] = lambda: fake_provider
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_webhook_secret] = lambda: webhook_secret
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def integration(db_session, tenant_id):
    """Enabled sandbox integration without a provisioned company"""
    return IntegrationService(db_session).upsert(IntegrationUpsert(
        tenant_id=tenant_id,
        api_token="token-sandbox-123",
        environment=Environment.SANDBOX,
    ))


@pytest.fixture
def issue_document(client, integration, tenant_id):
    """Issue an NF-e through the API and return the response JSON"""
    def _issue(ref=None, doc_type="nfe", payload=None):
        body = {
            "tenant_id": str(tenant_id),
            "doc_type": doc_type,
            "payload": payload or {"natureza_operacao": "Venda", "valor_total": "10.00"},
        }
        if ref is not None:
            body["ref"] = ref
        return client.post("/fiscal/issue", json=body)
    return _issue
