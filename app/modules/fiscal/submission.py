"""
Submission pipeline.

The local row is committed in 'submitted' before the provider is called, so a
crash mid-call still leaves a record that polling or a webhook can reconcile.
Whatever the provider answers (or fails to answer) is written back onto that
row and into the event log; the caller always gets the document id and ref.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID, uuid4
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.common.mixins import utcnow
from app.common.validators import parse_tenant_id
from app.modules.fiscal.client import FocusNFeClient, ProviderResponse
from app.modules.fiscal.crud import fiscal_document_crud, fiscal_event_log, Observation
from app.modules.fiscal.exceptions import PersistenceError, TransportError, ValidationError
from app.modules.fiscal.models import DocType, EventType, FiscalDocument
from app.modules.fiscal.service import IntegrationService
from app.modules.fiscal.status import FiscalStatus, normalize_status

logger = logging.getLogger(__name__)


@dataclass
class IssueResult:
    fiscal_document_id: UUID
    ref: str
    status: str
    http_status: int
    provider_response: Any
    transport_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.transport_error is None and 200 <= self.http_status < 300


def resolve_ref(ref: Optional[str], doc_type: DocType) -> str:
    """Caller ref verbatim (trimmed) or a fresh '<prefix>_<24 hex>' token"""
    if ref is not None and str(ref).strip():
        return str(ref).strip()
    return f"{doc_type.ref_prefix}_{uuid4().hex[:24]}"


class SubmissionService:

    def __init__(self, db: Session, client: FocusNFeClient):
        self.db = db
        self.client = client
        self.integrations = IntegrationService(db)

    def _validate(self, tenant_id, doc_type, payload):
        tenant = parse_tenant_id(tenant_id)
        if tenant is None:
            raise ValidationError("tenant_id must be a UUID")
        try:
            doc_type = DocType(doc_type)
        except ValueError:
            raise ValidationError(
                f"Invalid doc_type '{doc_type}' (use {', '.join(t.value for t in DocType)})"
            )
        if not isinstance(payload, dict) or not payload:
            raise ValidationError("payload is required")
        return tenant, doc_type

    def issue(self, tenant_id, doc_type, payload: Dict[str, Any], ref: Optional[str] = None) -> IssueResult:
        tenant, doc_type = self._validate(tenant_id, doc_type, payload)
        integration = self.integrations.require_ready(tenant, doc_type)

        final_ref = resolve_ref(ref, doc_type)
        document = fiscal_document_crud.create_submitted(self.db, tenant, doc_type.value, final_ref, payload)
        logger.info(f"Fiscal document {document.id} ({doc_type.value}, ref={final_ref}) submitted for tenant {tenant}")

        sent_at = utcnow()
        try:
            response = self.client.submit_document(
                integration.environment, integration.api_token, doc_type, final_ref, payload
            )
        except TransportError as e:
            record = {"error": e.message, "http_status": 0, "body": None}
            self._settle(document, FiscalStatus.ERROR, None, record, sent_at)
            logger.error(f"Fiscal document {document.id} marked error: {e.message}")
            return IssueResult(
                fiscal_document_id=document.id,
                ref=final_ref,
                status=document.status,
                http_status=0,
                provider_response=record,
                transport_error=e.message,
            )

        status = FiscalStatus.PROCESSING if response.ok else FiscalStatus.ERROR
        self._settle(document, status, response, response.as_record(), sent_at)
        if response.ok:
            logger.info(f"Fiscal document {document.id} accepted by provider (HTTP {response.status_code})")
        else:
            logger.warning(f"Fiscal document {document.id} refused by provider (HTTP {response.status_code})")

        return IssueResult(
            fiscal_document_id=document.id,
            ref=final_ref,
            status=document.status,
            http_status=response.status_code,
            provider_response=response.body,
        )

    def _settle(
        self,
        document: FiscalDocument,
        status: FiscalStatus,
        response: Optional[ProviderResponse],
        record: Dict[str, Any],
        sent_at
    ):
        """Write the provider outcome onto the row and the event log"""
        _, raw_status = normalize_status(response.field("status") if response else None)
        try:
            fiscal_document_crud.record_response(self.db, document, record)
            fiscal_document_crud.apply_observation(
                self.db,
                document,
                Observation(status=status, provider_status=raw_status, observed_at=sent_at)
            )
            fiscal_event_log.append(
                self.db,
                document,
                EventType.SUBMISSION,
                status.value,
                event_data={"ref": document.ref, "doc_type": document.doc_type, "payload": document.payload},
                provider_response=record,
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            # The provider may hold the document now; the next poll or webhook repairs the row
            logger.error(f"Could not record provider outcome for fiscal document {document.id}: {e}")
            raise PersistenceError(
                "Provider outcome could not be recorded",
                fiscal_document_id=document.id
            )
        self.db.refresh(document)
