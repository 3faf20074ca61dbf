"""
Router para el módulo fiscal

Endpoints REST de la pipeline de documentos fiscales (Focus NFe):
- Certificado A1 del tenant (upload cifrado y consulta)
- Configuración de la integración por tenant
- Emisión, consulta de status y webhook del proveedor
- Provisionamiento de la empresa emisora
- Listados de documentos y eventos

Endpoints internos: el caller es un servicio de confianza que envía tenant_id.
Errores de dominio se renderizan en app.main con {error, category, ...}.
"""

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

from app.core.config import settings
from app.database.database import get_db
from app.modules.fiscal.dependencies import (
    get_certificate_vault, get_integration_service, get_provisioning_service,
    get_reconciliation_service, get_submission_service
)
from app.modules.fiscal.reconciliation import ReconciliationService
from app.modules.fiscal.schemas import (
    CertificateEnvelope, CertificateOut, CompanyProvisionRequest, DocumentList, EventList,
    FiscalDocumentOut, IntegrationEnvelope, IntegrationOut, IntegrationUpsert, IssueRequest,
    IssueResponse, ProvisionResponse, StatusResponse, WebhookAck
)
from app.modules.fiscal.service import IntegrationService, ProvisioningService, list_documents, list_events
from app.modules.fiscal.submission import SubmissionService
from app.modules.fiscal.vault import CertificateVault

router = APIRouter(
    prefix="/fiscal",
    tags=["Fiscal"],
    responses={404: {"description": "Not found"}}
)

SIGNATURE_HEADERS = ("X-Signature", "X-FocusNFe-Signature")


def _failure(status_code: int, category: str, message: str, **extra) -> JSONResponse:
    body = {"success": False, "error": message, "category": category}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


# ===== CERTIFICADO =====

@router.post("/certificate", response_model=CertificateEnvelope)
async def upload_certificate(
    tenant_id: UUID = Form(...),
    password: str = Form(...),
    file: UploadFile = File(...),
    vault: CertificateVault = Depends(get_certificate_vault)
):
    """
    Subir el certificado A1 (.pfx/.p12) del tenant

    La contraseña se guarda cifrada (AES-256-GCM); la respuesta nunca la incluye.
    """
    content = await file.read()
    certificate = vault.store_certificate(
        tenant_id, content, file.filename, file.content_type, password
    )
    return CertificateEnvelope(data=CertificateOut.model_validate(certificate))


@router.get("/certificate", response_model=CertificateEnvelope)
async def get_certificate(
    tenant_id: UUID = Query(..., description="ID del tenant"),
    vault: CertificateVault = Depends(get_certificate_vault)
):
    """Metadatos del certificado más reciente, o null"""
    certificate = vault.get_certificate(tenant_id)
    return CertificateEnvelope(data=CertificateOut.model_validate(certificate) if certificate else None)


# ===== INTEGRACIÓN =====

@router.post("/integration", response_model=IntegrationEnvelope)
async def save_integration(
    data: IntegrationUpsert,
    integrations: IntegrationService = Depends(get_integration_service)
):
    """
    Crear o actualizar la integración Focus NFe del tenant

    - **environment**: sandbox | production (acepta homologacao | producao)
    - **company_id**: id de la empresa en el proveedor (obligatorio para nfse_nacional)
    """
    integration = integrations.upsert(data)
    return IntegrationEnvelope(data=IntegrationOut.model_validate(integration))


@router.get("/integration", response_model=IntegrationEnvelope)
async def get_integration(
    tenant_id: UUID = Query(..., description="ID del tenant"),
    integrations: IntegrationService = Depends(get_integration_service)
):
    integration = integrations.get(tenant_id)
    return IntegrationEnvelope(data=IntegrationOut.model_validate(integration) if integration else None)


# ===== EMISIÓN Y STATUS =====

@router.post("/issue", response_model=IssueResponse)
def issue_document(
    data: IssueRequest,
    submissions: SubmissionService = Depends(get_submission_service)
):
    """
    Emitir un documento fiscal

    El registro queda en 'submitted' antes de llamar al proveedor. Con error del
    proveedor responde 400 y con error de transporte 500; en ambos casos el
    cuerpo incluye fiscal_document_id y ref.
    """
    result = submissions.issue(data.tenant_id, data.doc_type, data.payload, data.ref)

    if result.transport_error is not None:
        return _failure(
            500, "transport", result.transport_error,
            fiscal_document_id=result.fiscal_document_id,
            ref=result.ref,
            http_status=0,
            provider_response=result.provider_response,
        )
    if not result.ok:
        return _failure(
            400, "provider", "Focus NFe rejected the document",
            fiscal_document_id=result.fiscal_document_id,
            ref=result.ref,
            http_status=result.http_status,
            provider_response=result.provider_response,
        )

    return IssueResponse(
        success=True,
        fiscal_document_id=result.fiscal_document_id,
        ref=result.ref,
        http_status=result.http_status,
        provider_response=result.provider_response,
    )


@router.get("/status", response_model=StatusResponse)
def check_status(
    fiscal_document_id: UUID = Query(..., description="ID del documento fiscal"),
    tenant_id: Optional[UUID] = Query(None, description="Restringe la búsqueda al tenant"),
    completa: Optional[str] = Query(None, description="Pide al proveedor la respuesta completa"),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service)
):
    """Consultar el status en el proveedor y reconciliar el registro local"""
    result = reconciliation.check_status(fiscal_document_id, tenant_id, completa)
    document = FiscalDocumentOut.model_validate(result.document)

    if result.transport_error is not None:
        return _failure(
            500, "transport", result.transport_error,
            fiscal_document_id=result.document.id,
            data=document,
            http_status=0,
            provider_response=result.provider_response,
        )
    if not result.ok:
        return _failure(
            400, "provider", "Focus NFe status check failed",
            fiscal_document_id=result.document.id,
            data=document,
            http_status=result.http_status,
            provider_response=result.provider_response,
        )

    return StatusResponse(
        success=True,
        data=document,
        http_status=result.http_status,
        provider_response=result.provider_response,
    )


# ===== WEBHOOK =====

@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Notificación de cambio de status desde Focus NFe

    Responde 200 salvo firma inválida (401) o cuerpo ilegible / sin ref (400).
    """
    raw_body = await request.body()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
    outcome = reconciliation.handle_webhook(raw_body, signature)
    return WebhookAck(message=outcome.message)


@router.get("/webhook", response_model=WebhookAck)
async def webhook_liveness():
    """Permite validar la URL al configurarla en el proveedor"""
    return WebhookAck(message="Focus NFe webhook endpoint is active")


# ===== PROVISIONAMIENTO =====

@router.post("/company/provision", response_model=ProvisionResponse)
def provision_company(
    data: CompanyProvisionRequest,
    provisioning: ProvisioningService = Depends(get_provisioning_service)
):
    """Registrar la empresa emisora en Focus NFe con el certificado del tenant"""
    return provisioning.provision_company(data)


# ===== LISTADOS =====

@router.get("/documents", response_model=DocumentList)
async def get_documents(
    tenant_id: UUID = Query(..., description="ID del tenant"),
    doc_type: Optional[str] = Query(None, description="nfe, nfce, nfse o nfse_nacional"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Documentos fiscales del tenant, más recientes primero"""
    return list_documents(db, tenant_id, doc_type, limit, offset)


@router.get("/events", response_model=EventList)
async def get_events(
    tenant_id: Optional[UUID] = Query(None, description="ID del tenant"),
    fiscal_document_id: Optional[UUID] = Query(None, description="ID del documento fiscal"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Bitácora de eventos (envíos, consultas y webhooks), más recientes primero"""
    return list_events(db, tenant_id, fiscal_document_id, limit, offset)
