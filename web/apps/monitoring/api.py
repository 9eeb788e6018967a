"""Liveness and readiness check: database plus the inventory service."""

import logging

import httpx
from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.providers import inventory_port

logger = logging.getLogger(__name__)


def _db_ok() -> bool:
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        return True
    except DatabaseError:
        logger.exception("health check: database unavailable")
        return False


def _inventory_ok() -> bool:
    try:
        return inventory_port().health()
    except (httpx.HTTPError, RuntimeError) as e:
        logger.warning("health check: inventory unavailable", extra={"error": str(e)})
        return False


def health_view(_request):
    db_ok = _db_ok()
    inventory_ok = _inventory_ok()
    ok = db_ok and inventory_ok
    return JsonResponse(
        {"ok": ok, "components": {"db": {"ok": db_ok}, "inventory": {"ok": inventory_ok}}},
        status=200 if ok else 503,
    )
