"""Background tasks for the workflow service."""
from __future__ import annotations

import logging

from celery import shared_task
from django.db import transaction

from . import engine
from .exceptions import WorkflowError
from .models import BulkInitializationJob

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=5)
def bulk_initialize_workflows(self, job_id: str) -> None:
    """Start workflows for every entity of a module that is missing one."""

    job: BulkInitializationJob | None = None
    try:
        with transaction.atomic():
            job = BulkInitializationJob.objects.select_for_update().get(id=job_id)
            if job.status == BulkInitializationJob.COMPLETED:
                logger.info("Bulk initialization %s already completed", job_id)
                return
            if job.status == BulkInitializationJob.PROCESSING:
                logger.info("Bulk initialization %s already processing", job_id)
                return
            job.mark_processing()

        initialized, skipped, failed = engine.bulk_initialize(job.module, job.organization_id)
        job.mark_completed(initialized, skipped, failed)
        logger.info(
            "Bulk initialization %s finished: %s initialized, %s skipped, %s failed",
            job_id,
            initialized,
            skipped,
            failed,
        )
    except BulkInitializationJob.DoesNotExist:
        logger.warning("Bulk initialization %s does not exist", job_id)
    except WorkflowError as exc:
        logger.warning("Bulk initialization %s cannot run: %s", job_id, exc)
        if job is not None:
            job.mark_failed(str(exc.detail))
    except Exception as exc:  # pragma: no cover - retries exercised in production
        logger.exception("Bulk initialization %s failed", job_id)
        if job is not None:
            if self.request.retries >= self.max_retries:
                job.mark_failed(str(exc))
                return
            job.status = BulkInitializationJob.PENDING
            job.save(update_fields=["status", "updated_at"])
        raise self.retry(exc=exc, countdown=min(60, 2 ** self.request.retries))
