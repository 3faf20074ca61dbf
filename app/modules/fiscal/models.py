from app.database.database import Base
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Integer, Text, JSON, Index, event
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import BaseMixin, TenantMixin, CreatedAtMixin
from app.modules.fiscal.status import FiscalStatus
import enum


PROVIDER_FOCUSNFE = "focusnfe"


class Environment(str, enum.Enum):
    SANDBOX = "sandbox"        # homologacao
    PRODUCTION = "production"  # producao


class DocType(str, enum.Enum):
    NFE = "nfe"
    NFCE = "nfce"
    NFSE = "nfse"
    NFSE_NACIONAL = "nfse_nacional"

    @property
    def endpoint(self) -> str:
        """Path segment on the provider API"""
        return "nfsen" if self is DocType.NFSE_NACIONAL else self.value

    @property
    def ref_prefix(self) -> str:
        return "fdn" if self is DocType.NFSE_NACIONAL else "fd"

    @property
    def requires_provisioned_company(self) -> bool:
        return self is DocType.NFSE_NACIONAL


class EventType(str, enum.Enum):
    SUBMISSION = "submission"
    STATUS_CHECK = "status_check"
    WEBHOOK = "webhook"


class CertificateStatus(str, enum.Enum):
    UPLOADED = "uploaded"      # Stored, container not readable with the given password
    VALIDATED = "validated"    # PKCS#12 opened, validity and CNPJ extracted


class FiscalIntegration(Base, BaseMixin):
    __tablename__ = "fiscal_integrations"

    provider = Column(String(30), nullable=False, default=PROVIDER_FOCUSNFE)
    environment = Column(String(20), nullable=False, default=Environment.SANDBOX.value)
    api_token = Column(String(255), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    cnpj_emitente = Column(String(14), nullable=True)

    # Filled by company provisioning
    provider_company_id = Column(String(100), nullable=True)
    token_sandbox = Column(String(255), nullable=True)
    token_production = Column(String(255), nullable=True)
    cert_valid_from = Column(DateTime(timezone=True), nullable=True)
    cert_valid_to = Column(DateTime(timezone=True), nullable=True)
    cert_cnpj = Column(String(14), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_fiscal_integration_tenant_provider"),
    )

    def __repr__(self):
        # api_token left out of logs
        return f"<FiscalIntegration(tenant_id={self.tenant_id}, provider={self.provider}, environment={self.environment})>"


class FiscalCertificate(Base, TenantMixin, CreatedAtMixin):
    """Append-only: a new upload is a new row, the newest row is the active one"""
    __tablename__ = "fiscal_certificates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    provider = Column(String(30), nullable=False, default=PROVIDER_FOCUSNFE)

    storage_bucket = Column(String(100), nullable=False)
    storage_path = Column(String(500), nullable=False)
    original_filename = Column(String(255), nullable=False)
    content_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=False)

    # Passphrase, AES-256-GCM under a per-row data key
    password_ciphertext_b64 = Column(Text, nullable=False)
    password_iv_b64 = Column(String(32), nullable=False)
    password_tag_b64 = Column(String(32), nullable=False)
    # Data key wrapped by the key-encryption key of key_version
    wrapped_key_b64 = Column(Text, nullable=False)
    key_version = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=CertificateStatus.UPLOADED.value)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_to = Column(DateTime(timezone=True), nullable=True)
    cnpj = Column(String(14), nullable=True)

    __table_args__ = (
        Index("idx_fiscal_certificates_tenant_created", "tenant_id", "provider", "created_at"),
    )


class FiscalDocument(Base, BaseMixin):
    __tablename__ = "fiscal_documents"

    provider = Column(String(30), nullable=False, default=PROVIDER_FOCUSNFE)
    doc_type = Column(String(20), nullable=False)
    ref = Column(String(100), nullable=False)
    status = Column(String(50), nullable=False, default=FiscalStatus.SUBMITTED.value, index=True)
    provider_status = Column(String(100), nullable=True)
    status_observed_at = Column(DateTime(timezone=True), nullable=True)

    payload = Column(JSON, nullable=False)
    provider_response = Column(JSON, nullable=True)

    numero = Column(String(20), nullable=True)
    serie = Column(String(10), nullable=True)
    chave = Column(String(60), nullable=True)
    xml_path = Column(String(500), nullable=True)
    pdf_path = Column(String(500), nullable=True)

    events = relationship(
        "FiscalDocumentEvent",
        back_populates="document",
        order_by="FiscalDocumentEvent.created_at",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("provider", "ref", name="uq_fiscal_document_provider_ref"),
        Index("idx_fiscal_documents_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self):
        return f"<FiscalDocument(id={self.id}, ref={self.ref}, status={self.status})>"


class FiscalDocumentEvent(Base, TenantMixin, CreatedAtMixin):
    """Delivery ledger: one row per submission, poll or webhook, never changed"""
    __tablename__ = "fiscal_document_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    fiscal_document_id = Column(UUID(as_uuid=True), ForeignKey("fiscal_documents.id"), nullable=False, index=True)
    event_type = Column(String(20), nullable=False)
    event_status = Column(String(100), nullable=True)
    event_data = Column(JSON, nullable=True)
    provider_response = Column(JSON, nullable=True)

    document = relationship("FiscalDocument", back_populates="events")


class AppendOnlyViolation(Exception):
    pass


@event.listens_for(FiscalDocumentEvent, "before_update")
def _refuse_event_update(mapper, connection, target):
    raise AppendOnlyViolation("fiscal_document_events rows cannot be updated")


@event.listens_for(FiscalDocumentEvent, "before_delete")
def _refuse_event_delete(mapper, connection, target):
    raise AppendOnlyViolation("fiscal_document_events rows cannot be deleted")
