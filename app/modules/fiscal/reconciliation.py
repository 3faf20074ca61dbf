"""
Reconciliation channel: status polling, provider webhooks and the periodic
sweep over documents still pending at the provider.

Every patch goes through ``FiscalDocumentCRUD.apply_observation`` with the
time the provider truth was observed; polls use the time the request was
sent, webhooks the time they were received.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional
from uuid import UUID
import hashlib
import hmac
import json
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.common.mixins import utcnow
from app.modules.fiscal.client import FocusNFeClient
from app.modules.fiscal.crud import fiscal_document_crud, fiscal_event_log, Observation, extract_provider_fields
from app.modules.fiscal.exceptions import FiscalError, NotFoundError, SignatureError, TransportError, ValidationError
from app.modules.fiscal.models import DocType, EventType, FiscalDocument
from app.modules.fiscal.service import IntegrationService
from app.modules.fiscal.status import FiscalStatus, normalize_status

logger = logging.getLogger(__name__)


@dataclass
class StatusResult:
    document: FiscalDocument
    http_status: int
    provider_response: Any
    applied: bool = False
    transport_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.transport_error is None and 200 <= self.http_status < 300


@dataclass
class WebhookOutcome:
    message: str
    fiscal_document_id: Optional[UUID] = None
    applied: bool = False


@dataclass
class SweepSummary:
    checked: int = 0
    updated: int = 0
    failed: List[str] = field(default_factory=list)


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]):
    """HMAC-SHA256 hex of the raw body, compared in constant time"""
    if not secret:
        return
    if not signature:
        raise SignatureError("Missing webhook signature")
    provided = signature.strip().lower()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8")):
        raise SignatureError("Invalid webhook signature")


class ReconciliationService:

    def __init__(self, db: Session, client: FocusNFeClient, webhook_secret: Optional[str] = None):
        self.db = db
        self.client = client
        self.webhook_secret = webhook_secret
        self.integrations = IntegrationService(db)

    # ===== POLL =====

    def check_status(
        self,
        fiscal_document_id: UUID,
        tenant_id: Optional[UUID] = None,
        completa: Optional[str] = None,
        manual: bool = True
    ) -> StatusResult:
        document = fiscal_document_crud.get_by_id(self.db, fiscal_document_id, tenant_id)
        if document is None:
            raise NotFoundError("Fiscal document not found")

        integration = self.integrations.require_ready(document.tenant_id)
        sent_at = utcnow()
        try:
            response = self.client.fetch_status(
                integration.environment,
                integration.api_token,
                DocType(document.doc_type),
                document.ref,
                completa=completa
            )
        except TransportError as e:
            record = {"error": e.message, "http_status": 0, "body": None}
            fiscal_document_crud.record_response(self.db, document, record)
            fiscal_event_log.append(
                self.db, document, EventType.STATUS_CHECK, "error",
                event_data={"manual_check": manual, "error": e.message},
                provider_response=record,
            )
            self.db.commit()
            self.db.refresh(document)
            return StatusResult(document=document, http_status=0, provider_response=record, transport_error=e.message)

        fiscal_document_crud.record_response(self.db, document, response.as_record())

        applied = False
        event_status = "error"
        if response.ok:
            target, raw_status = normalize_status(response.field("status"))
            applied = fiscal_document_crud.apply_observation(
                self.db,
                document,
                Observation(
                    status=target,
                    provider_status=raw_status,
                    fields=extract_provider_fields(response.body),
                    observed_at=sent_at,
                )
            )
            if target is None:
                event_status = document.status
            elif target is FiscalStatus.UNKNOWN:
                event_status = raw_status
            else:
                event_status = target.value
        else:
            logger.warning(
                f"Status check for fiscal document {document.id} answered HTTP {response.status_code}"
            )

        fiscal_event_log.append(
            self.db, document, EventType.STATUS_CHECK, event_status,
            event_data={"manual_check": manual, "http_status": response.status_code, "applied": applied},
            provider_response=response.body,
        )
        self.db.commit()
        self.db.refresh(document)

        return StatusResult(
            document=document,
            http_status=response.status_code,
            provider_response=response.body,
            applied=applied,
        )

    # ===== WEBHOOK =====

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        received_at = utcnow()
        verify_signature(raw_body, signature, self.webhook_secret)

        try:
            body = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be a JSON object")

        ref = body.get("ref")
        if ref is None or not str(ref).strip():
            raise ValidationError("ref is required in the webhook body")
        ref = str(ref).strip()

        document = fiscal_document_crud.get_by_ref(self.db, ref)
        if document is None:
            # Acknowledge so the provider does not retry forever
            logger.warning(f"Webhook for unknown ref {ref} acknowledged")
            return WebhookOutcome(message="Document not found, webhook acknowledged")

        target, raw_status = normalize_status(body.get("status"))
        applied = False
        if target is not None and self._differs(document, target, raw_status):
            applied = fiscal_document_crud.apply_observation(
                self.db,
                document,
                Observation(
                    status=target,
                    provider_status=raw_status,
                    fields=extract_provider_fields(body),
                    observed_at=received_at,
                )
            )

        fiscal_event_log.append(
            self.db, document, EventType.WEBHOOK, raw_status or "received",
            event_data=body,
            provider_response=body,
        )
        self.db.commit()

        logger.info(f"Webhook for fiscal document {document.id} (ref={ref}) processed, applied={applied}")
        return WebhookOutcome(
            message="Webhook processed",
            fiscal_document_id=document.id,
            applied=applied
        )

    @staticmethod
    def _differs(document: FiscalDocument, target: FiscalStatus, raw_status: Optional[str]) -> bool:
        if target is FiscalStatus.UNKNOWN:
            return raw_status != document.provider_status
        return target.value != document.status

    # ===== SWEEP =====

    def reconcile_pending(self, min_age_seconds: int, limit: int) -> SweepSummary:
        """Poll documents stuck in submitted/processing; one failure does not stop the batch"""
        summary = SweepSummary()
        pending_ids = [document.id for document in fiscal_document_crud.find_pending(self.db, min_age_seconds, limit)]
        for document_id in pending_ids:
            summary.checked += 1
            try:
                result = self.check_status(document_id, manual=False)
            except (FiscalError, SQLAlchemyError, ValueError) as e:
                self.db.rollback()
                logger.warning(f"Sweep could not check fiscal document {document_id}: {e}")
                summary.failed.append(str(document_id))
                continue
            if result.applied:
                summary.updated += 1
            elif not result.ok:
                summary.failed.append(str(document_id))

        logger.info(
            f"Reconciliation sweep: checked={summary.checked} updated={summary.updated} failed={len(summary.failed)}"
        )
        return summary
