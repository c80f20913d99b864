"""Request middleware shared by every endpoint of the service."""
from __future__ import annotations

import logging
import uuid
from typing import Callable

from django.http import HttpRequest, HttpResponse

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware:
    """Attach a correlation id to each request and echo it on the response."""

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.correlation_id = correlation_id  # type: ignore[attr-defined]
        logger.debug("[%s] %s %s", correlation_id, request.method, request.path)
        response = self.get_response(request)
        response[CORRELATION_HEADER] = correlation_id
        return response


def get_correlation_id(request: HttpRequest) -> str:
    return getattr(request, "correlation_id", "") or ""
