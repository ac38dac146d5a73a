import logging

from projectstore.core.celery_app import celery_app
from projectstore.core.firebase import get_db
from projectstore.services.receipt_service import issue_receipt

logger = logging.getLogger("projectstore")


@celery_app.task(
    bind=True,
    max_retries=5,
    # Exponential backoff: 1s, 2s, 4s... with jitter
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=True,
)
def issue_receipt_task(self, transaction_id: str) -> str:
    """At-least-once receipt creation for a verified transaction."""
    try:
        receipt = issue_receipt(get_db(), transaction_id)
        return receipt.id
    except Exception as exc:
        logger.error(
            f"Receipt for {transaction_id} failed (attempt {self.request.retries + 1}): {exc}"
        )
        raise
