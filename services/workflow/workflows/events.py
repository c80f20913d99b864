"""Domain events announced once a workflow change has been committed.

Receivers get the event fields as keyword arguments together with
``correlation_id`` and ``organization_id``. Nothing is sent for a transaction
that rolls back.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger(__name__)

workflow_initialized = Signal()
workflow_step_transitioned = Signal()
workflow_step_reassigned = Signal()
workflow_template_created = Signal()
workflow_template_updated = Signal()
workflow_template_deleted = Signal()


def publish(
    signal: Signal,
    sender: Any,
    correlation_id: str = "",
    organization_id: Optional[int] = None,
    **payload: Any,
) -> None:
    def send() -> None:
        responses = signal.send_robust(
            sender=sender,
            correlation_id=correlation_id,
            organization_id=organization_id,
            **payload,
        )
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    "[%s] Event receiver %r failed: %s",
                    correlation_id,
                    receiver,
                    response,
                    exc_info=response,
                )

    transaction.on_commit(send)
