"""
Integration registry, company provisioning and read-side queries
"""
import base64
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.modules.fiscal.client import FocusNFeClient
from app.modules.fiscal.crud import fiscal_document_crud, fiscal_event_log
from app.modules.fiscal.exceptions import ConfigurationError, ProviderError, ValidationError
from app.modules.fiscal.models import FiscalIntegration, DocType, PROVIDER_FOCUSNFE
from app.modules.fiscal.schemas import (
    IntegrationUpsert, CompanyProvisionRequest, DocumentList, EventList, Pagination,
    FiscalDocumentOut, FiscalEventOut, ProvisionData, ProvisionResponse
)
from app.modules.fiscal.vault import CertificateVault

logger = logging.getLogger(__name__)


def _parse_datetime(value) -> Optional[datetime]:
    """Provider timestamps are ISO-8601 strings"""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable provider timestamp: {value!r}")
        return None


class IntegrationService:
    """Per-tenant provider configuration"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, tenant_id: UUID) -> Optional[FiscalIntegration]:
        return self.db.query(FiscalIntegration).filter(
            FiscalIntegration.tenant_id == tenant_id,
            FiscalIntegration.provider == PROVIDER_FOCUSNFE
        ).first()

    def upsert(self, data: IntegrationUpsert) -> FiscalIntegration:
        values = {
            "environment": data.environment.value,
            "api_token": data.api_token,
            "enabled": data.enabled,
        }
        # Absent optional fields keep what provisioning or an earlier call stored
        if data.company_id is not None:
            values["provider_company_id"] = data.company_id
        if data.cnpj_emitente is not None:
            values["cnpj_emitente"] = data.cnpj_emitente

        integration = self.get(data.tenant_id)
        if integration is None:
            integration = FiscalIntegration(tenant_id=data.tenant_id, provider=PROVIDER_FOCUSNFE, **values)
            self.db.add(integration)
            try:
                self.db.commit()
            except IntegrityError:
                # Concurrent first save for this tenant: apply ours as an update
                self.db.rollback()
                integration = self.get(data.tenant_id)
                for key, value in values.items():
                    setattr(integration, key, value)
                self.db.commit()
        else:
            for key, value in values.items():
                setattr(integration, key, value)
            self.db.commit()

        self.db.refresh(integration)
        logger.info(
            f"Saved {PROVIDER_FOCUSNFE} integration for tenant {data.tenant_id} "
            f"(environment={integration.environment}, enabled={integration.enabled})"
        )
        return integration

    def require_ready(self, tenant_id: UUID, doc_type: Optional[DocType] = None) -> FiscalIntegration:
        """Integration usable for provider calls, or ConfigurationError"""
        integration = self.get(tenant_id)
        if integration is None or not integration.enabled:
            raise ConfigurationError(
                "Focus NFe integration is not configured or is disabled for this tenant"
            )
        if not integration.api_token:
            raise ConfigurationError("Focus NFe integration has no api_token")
        if doc_type is not None and doc_type.requires_provisioned_company and not integration.provider_company_id:
            raise ConfigurationError(
                f"{doc_type.value} requires the company to be provisioned with the provider first"
            )
        return integration


class ProvisioningService:
    """Registers the tenant as an issuing company, uploading its certificate"""

    def __init__(self, db: Session, client: FocusNFeClient, vault: CertificateVault):
        self.db = db
        self.client = client
        self.vault = vault
        self.integrations = IntegrationService(db)

    def _empresa_payload(self, request: CompanyProvisionRequest, certificate_b64: str, passphrase: str) -> Dict[str, Any]:
        return {
            "nome": request.nome,
            "nome_fantasia": request.nome_fantasia or request.nome,
            "cnpj": request.cnpj,
            "email": request.email or "",
            "telefone": request.telefone or "",
            "logradouro": request.logradouro,
            "numero": request.numero,
            "complemento": request.complemento,
            "bairro": request.bairro,
            "municipio": request.municipio,
            "uf": request.uf,
            "cep": request.cep or "",
            "inscricao_estadual": request.inscricao_estadual,
            "inscricao_municipal": request.inscricao_municipal,
            "regime_tributario": request.regime_tributario,
            "arquivo_certificado_base64": certificate_b64,
            "senha_certificado": passphrase,
            "habilita_nfe": request.habilita_nfe,
            "habilita_nfce": request.habilita_nfce,
            "habilita_nfse": request.habilita_nfse,
        }

    def provision_company(self, request: CompanyProvisionRequest) -> ProvisionResponse:
        integration = self.integrations.require_ready(request.tenant_id)

        certificate = self.vault.get_certificate(request.tenant_id)
        if certificate is None:
            raise ConfigurationError("No certificate uploaded for this tenant")

        blob, passphrase = self.vault.unseal(certificate)
        empresa = self._empresa_payload(request, base64.b64encode(blob).decode("ascii"), passphrase)

        response = self.client.save_company(
            integration.environment,
            integration.api_token,
            empresa,
            company_id=integration.provider_company_id
        )
        if not response.ok:
            logger.warning(
                f"Company provisioning rejected for tenant {request.tenant_id}: HTTP {response.status_code}"
            )
            raise ProviderError(
                "Focus NFe rejected the company provisioning",
                details={"http_status": response.status_code, "provider_error": response.body}
            )

        provider_id = response.field("id")
        integration.provider_company_id = str(provider_id) if provider_id else integration.provider_company_id
        integration.token_sandbox = response.field("token_homologacao")
        integration.token_production = response.field("token_producao")
        integration.cert_valid_from = _parse_datetime(response.field("certificado_valido_de")) or certificate.valid_from
        integration.cert_valid_to = _parse_datetime(response.field("certificado_valido_ate")) or certificate.valid_to
        integration.cert_cnpj = response.field("certificado_cnpj") or certificate.cnpj
        self.db.commit()
        self.db.refresh(integration)

        logger.info(
            f"Provisioned tenant {request.tenant_id} as provider company {integration.provider_company_id}"
        )
        return ProvisionResponse(
            http_status=response.status_code,
            data=ProvisionData(
                provider_company_id=integration.provider_company_id,
                token_sandbox=integration.token_sandbox,
                token_production=integration.token_production,
                cert_valid_to=integration.cert_valid_to,
                cert_cnpj=integration.cert_cnpj,
            )
        )


def _page(total: int, limit: int, offset: int) -> Pagination:
    return Pagination(total=total, limit=limit, offset=offset, has_more=total > offset + limit)


def list_documents(db: Session, tenant_id: UUID, doc_type: Optional[str], limit: int, offset: int) -> DocumentList:
    if doc_type is not None:
        try:
            doc_type = DocType(doc_type).value
        except ValueError:
            raise ValidationError(f"Unknown doc_type '{doc_type}'")
    documents, total = fiscal_document_crud.list_documents(db, tenant_id, doc_type, limit, offset)
    return DocumentList(
        data=[FiscalDocumentOut.model_validate(d) for d in documents],
        pagination=_page(total, limit, offset)
    )


def list_events(
    db: Session,
    tenant_id: Optional[UUID],
    fiscal_document_id: Optional[UUID],
    limit: int,
    offset: int
) -> EventList:
    if tenant_id is None and fiscal_document_id is None:
        raise ValidationError("tenant_id or fiscal_document_id is required")
    events, total = fiscal_event_log.list_events(db, tenant_id, fiscal_document_id, limit, offset)
    return EventList(
        data=[FiscalEventOut.model_validate(e) for e in events],
        pagination=_page(total, limit, offset)
    )
