"""
Background tasks for fiscal document reconciliation
"""
from app.core.celery import celery_app
from app.core.config import settings
from app.database.database import SessionLocal
from app.modules.fiscal.dependencies import get_provider_client
from app.modules.fiscal.reconciliation import ReconciliationService
import logging

logger = logging.getLogger(__name__)


@celery_app.task
def reconcile_pending_documents():
    """
    Periodic task that polls the provider for documents still pending
    (submitted/processing) and not touched for a while
    """
    db = SessionLocal()
    try:
        service = ReconciliationService(db, get_provider_client(), settings.FOCUSNFE_WEBHOOK_SECRET)
        summary = service.reconcile_pending(
            settings.FISCAL_RECONCILE_MIN_AGE_SECONDS,
            settings.FISCAL_RECONCILE_BATCH_SIZE
        )
        return {
            "status": "completed",
            "checked": summary.checked,
            "updated": summary.updated,
            "failed": summary.failed,
        }
    except Exception as e:
        logger.error(f"Reconciliation sweep failed: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()
