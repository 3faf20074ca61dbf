"""
Document store and event log persistence
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.common.mixins import utcnow
from app.modules.fiscal.exceptions import ConflictError, PersistenceError
from app.modules.fiscal.models import FiscalDocument, FiscalDocumentEvent, EventType, PROVIDER_FOCUSNFE
from app.modules.fiscal.status import FiscalStatus, PENDING_STATUSES, can_transition

logger = logging.getLogger(__name__)


# Provider body keys -> local columns; later keys win
PROVIDER_FIELD_MAP = (
    ("numero", "numero"),
    ("serie", "serie"),
    ("chave_nfe", "chave"),
    ("chave", "chave"),
    ("caminho_xml_nota_fiscal", "xml_path"),
    ("caminho_xml", "xml_path"),
    ("caminho_danfe", "pdf_path"),
    ("caminho_pdf", "pdf_path"),
)


def extract_provider_fields(body: Any) -> Dict[str, str]:
    """Document number, series, access key and file paths present in a provider body"""
    if not isinstance(body, dict):
        return {}
    fields = {}
    for source, target in PROVIDER_FIELD_MAP:
        value = body.get(source)
        if value not in (None, ""):
            fields[target] = str(value)
    return fields


@dataclass
class Observation:
    """One look at provider-side truth, from a poll, a webhook or a submission answer"""
    status: Optional[FiscalStatus]
    provider_status: Optional[str] = None
    fields: Dict[str, str] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=utcnow)


class FiscalDocumentCRUD:

    def get_by_id(self, db: Session, document_id: UUID, tenant_id: Optional[UUID] = None) -> Optional[FiscalDocument]:
        query = db.query(FiscalDocument).filter(FiscalDocument.id == document_id)
        if tenant_id is not None:
            query = query.filter(FiscalDocument.tenant_id == tenant_id)
        return query.first()

    def get_by_ref(self, db: Session, ref: str, provider: str = PROVIDER_FOCUSNFE) -> Optional[FiscalDocument]:
        return db.query(FiscalDocument).filter(
            FiscalDocument.provider == provider,
            FiscalDocument.ref == ref
        ).first()

    def create_submitted(
        self, db: Session, tenant_id: UUID, doc_type: str, ref: str, payload: Dict[str, Any]
    ) -> FiscalDocument:
        """Insert and commit the row in 'submitted' before any provider call"""
        if self.get_by_ref(db, ref) is not None:
            raise ConflictError(f"A fiscal document with ref '{ref}' already exists")

        document = FiscalDocument(
            tenant_id=tenant_id,
            provider=PROVIDER_FOCUSNFE,
            doc_type=doc_type,
            ref=ref,
            status=FiscalStatus.SUBMITTED.value,
            payload=payload,
        )
        try:
            db.add(document)
            db.commit()
        except IntegrityError:
            db.rollback()
            # Lost the race against a concurrent insert of the same ref
            raise ConflictError(f"A fiscal document with ref '{ref}' already exists")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not persist fiscal document ref={ref}: {e}")
            raise PersistenceError("Could not persist fiscal document")
        db.refresh(document)
        return document

    def record_response(self, db: Session, document: FiscalDocument, provider_response: Dict[str, Any]):
        """Store the last raw provider answer; never touches status"""
        db.query(FiscalDocument).filter(FiscalDocument.id == document.id).update(
            {"provider_response": provider_response, "updated_at": utcnow()},
            synchronize_session=False
        )

    def apply_observation(self, db: Session, document: FiscalDocument, observation: Observation) -> bool:
        """
        Patch status and provider fields from an observation.

        The UPDATE is conditional on the stored status still being the one the
        transition was validated against and on the stored observation time
        being older, so a slow poll cannot overwrite a newer webhook.
        Returns True when the patch was applied. Does not commit.
        """
        values: Dict[str, Any] = {}
        target = observation.status

        if target is FiscalStatus.UNKNOWN:
            logger.warning(
                f"Provider-defined status '{observation.provider_status}' for document {document.id}; "
                f"keeping local status '{document.status}'"
            )
            values["provider_status"] = observation.provider_status
        elif target is not None:
            if not can_transition(document.status, target):
                logger.warning(
                    f"Ignoring transition {document.status} -> {target.value} for document {document.id}"
                )
                return False
            values["status"] = target.value
            values["provider_status"] = observation.provider_status
            values.update(observation.fields)
        else:
            values.update(observation.fields)

        if not values:
            return False

        values["status_observed_at"] = observation.observed_at
        values["updated_at"] = utcnow()

        updated = db.query(FiscalDocument).filter(
            FiscalDocument.id == document.id,
            FiscalDocument.status == document.status,
            or_(
                FiscalDocument.status_observed_at.is_(None),
                FiscalDocument.status_observed_at < observation.observed_at
            )
        ).update(values, synchronize_session=False)

        if not updated:
            logger.info(f"Stale observation for document {document.id} discarded")
            return False
        return True

    def list_documents(
        self,
        db: Session,
        tenant_id: UUID,
        doc_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[FiscalDocument], int]:
        query = db.query(FiscalDocument).filter(
            FiscalDocument.tenant_id == tenant_id,
            FiscalDocument.provider == PROVIDER_FOCUSNFE
        )
        if doc_type:
            query = query.filter(FiscalDocument.doc_type == doc_type)

        total = query.count()
        documents = query.order_by(FiscalDocument.created_at.desc()).offset(offset).limit(limit).all()
        return documents, total

    def find_pending(self, db: Session, min_age_seconds: int, limit: int) -> List[FiscalDocument]:
        """Documents still waiting on the provider and not touched recently"""
        cutoff = utcnow() - timedelta(seconds=min_age_seconds)
        return db.query(FiscalDocument).filter(
            and_(
                FiscalDocument.status.in_(PENDING_STATUSES),
                FiscalDocument.updated_at < cutoff
            )
        ).order_by(FiscalDocument.updated_at.asc()).limit(limit).all()


class FiscalEventLog:
    """Append-only delivery ledger of submissions, polls and webhooks"""

    def append(
        self,
        db: Session,
        document: FiscalDocument,
        event_type: EventType,
        event_status: Optional[str],
        event_data: Any = None,
        provider_response: Any = None
    ) -> FiscalDocumentEvent:
        entry = FiscalDocumentEvent(
            fiscal_document_id=document.id,
            tenant_id=document.tenant_id,
            event_type=event_type.value,
            event_status=event_status,
            event_data=event_data,
            provider_response=provider_response,
        )
        db.add(entry)
        return entry

    def list_events(
        self,
        db: Session,
        tenant_id: Optional[UUID] = None,
        fiscal_document_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[FiscalDocumentEvent], int]:
        query = db.query(FiscalDocumentEvent)
        if tenant_id is not None:
            query = query.filter(FiscalDocumentEvent.tenant_id == tenant_id)
        if fiscal_document_id is not None:
            query = query.filter(FiscalDocumentEvent.fiscal_document_id == fiscal_document_id)

        total = query.count()
        events = query.order_by(FiscalDocumentEvent.created_at.desc()).offset(offset).limit(limit).all()
        return events, total


fiscal_document_crud = FiscalDocumentCRUD()
fiscal_event_log = FiscalEventLog()
