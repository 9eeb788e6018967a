"""DRF exception handler mapping domain and upstream errors to responses.

Every error body has the shape ``{"detail": CODE, "message": text}``:

- ``NotFoundError`` → 404;
- any other ``OrderError`` (validation, conflicts, gateway refusals) → 400;
- pydantic validation failures → 400 ``VALIDATION_ERROR`` with ``errors``;
- ``httpx`` transport/status errors and an open circuit → 503
  ``UPSTREAM_UNAVAILABLE``.

Anything else falls through to DRF's default handler.
"""

import json
import logging

import httpx
import pydantic
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from apps.orders.errors import NotFoundError, OrderError, OutOfStock

logger = logging.getLogger(__name__)


def is_circuit_error(exc: Exception) -> bool:
    return isinstance(exc, RuntimeError) and str(exc).startswith("CIRCUIT_")


def error_body(exc: OrderError) -> dict:
    body = {"detail": exc.code, "message": exc.message}
    if isinstance(exc, OutOfStock):
        body["skus"] = exc.skus
    return body


def error_status(exc: OrderError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_400_BAD_REQUEST


def upstream_unavailable_body() -> dict:
    return {"detail": "UPSTREAM_UNAVAILABLE", "message": "a downstream service is unavailable"}


def exception_handler(exc, context):
    if isinstance(exc, OrderError):
        return Response(error_body(exc), status=error_status(exc))
    if isinstance(exc, pydantic.ValidationError):
        return Response(
            {
                "detail": "VALIDATION_ERROR",
                "message": "invalid request payload",
                "errors": json.loads(exc.json(include_url=False)),
            },
            status=status.HTTP_400_BAD_REQUEST,
        )
    if isinstance(exc, httpx.HTTPError) or is_circuit_error(exc):
        logger.warning("upstream unavailable", extra={"error": str(exc), "view": type(context.get("view")).__name__})
        return Response(upstream_unavailable_body(), status=status.HTTP_503_SERVICE_UNAVAILABLE)
    return drf_exception_handler(exc, context)
