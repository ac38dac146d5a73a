from celery import Celery
from projectstore.core.config import settings

celery_app = Celery(
    "projectstore",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

# Auto-discover tasks
celery_app.autodiscover_tasks(packages=["projectstore.tasks"], related_name="receipt_celery")

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    # Receipts must survive a worker crash mid-task
    task_acks_late=True,
)
