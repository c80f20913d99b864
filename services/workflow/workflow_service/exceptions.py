"""DRF exception handling for the workflow service."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from .middleware import get_correlation_id

logger = logging.getLogger(__name__)


def exception_handler(exc: Exception, context: Dict[str, Any]) -> Optional[Response]:
    """Render errors with DRF and stamp them with the request correlation id."""

    response = drf_exception_handler(exc, context)
    if response is None:
        return None

    request = context.get("request")
    correlation_id = get_correlation_id(request) if request is not None else ""
    if isinstance(response.data, dict):
        response.data.setdefault("correlationId", correlation_id)
    logger.info(
        "[%s] request failed with %s: %s",
        correlation_id,
        response.status_code,
        exc,
    )
    return response
