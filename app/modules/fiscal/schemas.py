from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import datetime

from app.common.validators import only_digits, validate_cnpj
from app.modules.fiscal.models import Environment, DocType


ENVIRONMENT_ALIASES = {
    "homologacao": Environment.SANDBOX.value,
    "producao": Environment.PRODUCTION.value,
}


# Integration Schemas
class IntegrationUpsert(BaseModel):
    tenant_id: UUID
    api_token: str = Field(..., min_length=1, max_length=255)
    environment: Environment = Environment.SANDBOX
    company_id: Optional[str] = Field(None, max_length=100, description="Provider-assigned company id")
    cnpj_emitente: Optional[str] = None
    enabled: bool = True

    @field_validator('environment', mode='before')
    @classmethod
    def accept_provider_aliases(cls, v):
        if isinstance(v, str):
            return ENVIRONMENT_ALIASES.get(v.strip().lower(), v.strip().lower())
        return v

    @field_validator('api_token')
    @classmethod
    def strip_token(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('api_token must not be blank')
        return v

    @field_validator('cnpj_emitente')
    @classmethod
    def validate_cnpj_emitente(cls, v):
        if v is None or v == "":
            return None
        digits = only_digits(v)
        if not validate_cnpj(digits):
            raise ValueError('cnpj_emitente is not a valid CNPJ')
        return digits


class IntegrationOut(BaseModel):
    id: UUID
    tenant_id: UUID
    provider: str
    environment: str
    api_token: Optional[str]
    enabled: bool
    provider_company_id: Optional[str]
    cnpj_emitente: Optional[str]
    token_sandbox: Optional[str] = None
    token_production: Optional[str] = None
    cert_valid_from: Optional[datetime] = None
    cert_valid_to: Optional[datetime] = None
    cert_cnpj: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class IntegrationEnvelope(BaseModel):
    success: bool = True
    data: Optional[IntegrationOut]


# Certificate Schemas
class CertificateOut(BaseModel):
    """Certificate metadata; ciphertext fields are never serialized"""
    id: UUID
    tenant_id: UUID
    provider: str
    storage_path: str
    original_filename: str
    content_type: Optional[str]
    size_bytes: int
    status: str
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    cnpj: Optional[str]
    key_version: int
    created_at: datetime

    class Config:
        from_attributes = True


class CertificateEnvelope(BaseModel):
    success: bool = True
    data: Optional[CertificateOut]


# Document Schemas
class IssueRequest(BaseModel):
    tenant_id: UUID
    doc_type: DocType
    payload: Dict[str, Any]
    ref: Optional[str] = Field(None, max_length=100)

    @field_validator('payload')
    @classmethod
    def payload_not_empty(cls, v):
        if not v:
            raise ValueError('payload must not be empty')
        return v


class IssueResponse(BaseModel):
    success: bool
    fiscal_document_id: UUID
    ref: str
    http_status: int
    provider_response: Optional[Any] = None


class FiscalDocumentOut(BaseModel):
    id: UUID
    tenant_id: UUID
    provider: str
    doc_type: str
    ref: str
    status: str
    provider_status: Optional[str] = None
    payload: Dict[str, Any]
    provider_response: Optional[Any] = None
    numero: Optional[str] = None
    serie: Optional[str] = None
    chave: Optional[str] = None
    xml_path: Optional[str] = None
    pdf_path: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StatusResponse(BaseModel):
    success: bool
    data: FiscalDocumentOut
    http_status: int
    provider_response: Optional[Any] = None


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class DocumentList(BaseModel):
    success: bool = True
    data: List[FiscalDocumentOut]
    pagination: Pagination


# Event Schemas
class FiscalEventOut(BaseModel):
    id: UUID
    fiscal_document_id: UUID
    tenant_id: UUID
    event_type: str
    event_status: Optional[str]
    event_data: Optional[Any] = None
    provider_response: Optional[Any] = None
    created_at: datetime

    class Config:
        from_attributes = True


class EventList(BaseModel):
    success: bool = True
    data: List[FiscalEventOut]
    pagination: Pagination


# Webhook Schemas
class WebhookAck(BaseModel):
    success: bool = True
    message: str


# Provisioning Schemas
class CompanyProvisionRequest(BaseModel):
    """Issuing-company data sent to the provider together with the certificate"""
    tenant_id: UUID
    nome: str = Field(..., min_length=1, max_length=200, description="Razão social")
    nome_fantasia: Optional[str] = Field(None, max_length=200)
    cnpj: str
    email: Optional[str] = Field(None, max_length=100)
    telefone: Optional[str] = None
    logradouro: str = ""
    numero: str = ""
    complemento: str = ""
    bairro: str = ""
    municipio: str = ""
    uf: str = Field("", max_length=2)
    cep: Optional[str] = None
    inscricao_estadual: Optional[str] = None
    inscricao_municipal: Optional[str] = None
    regime_tributario: Optional[int] = Field(None, ge=1, le=3)
    habilita_nfe: bool = True
    habilita_nfce: bool = True
    habilita_nfse: bool = True

    @field_validator('cnpj')
    @classmethod
    def validate_company_cnpj(cls, v):
        digits = only_digits(v)
        if not validate_cnpj(digits):
            raise ValueError('cnpj must be a valid 14-digit CNPJ')
        return digits

    @field_validator('telefone', 'cep')
    @classmethod
    def digits_only(cls, v):
        return only_digits(v) if v else v


class ProvisionData(BaseModel):
    provider_company_id: Optional[str]
    token_sandbox: Optional[str] = None
    token_production: Optional[str] = None
    cert_valid_to: Optional[datetime] = None
    cert_cnpj: Optional[str] = None


class ProvisionResponse(BaseModel):
    success: bool = True
    http_status: int
    data: ProvisionData
