"""Idempotency keys for order creation.

A client may send ``Idempotency-Key`` with ``POST /api/orders/``. Keys are
scoped to the authenticated user. The first request with a key creates a
record and, once processed, stores its response; a retry with the same key
and the same payload replays that response; the same key with a different
payload is a conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    Args:
        payload: A JSON-serializable dictionary.

    Returns:
        str: Hex-encoded digest of the payload serialized with sorted keys.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(user_id: int, key: str, payload: dict):
    """Get or create the idempotency record for ``(user_id, key)``.

    The create path runs in a nested savepoint so an ``IntegrityError`` from a
    concurrent insert only rolls back that block; the existing record is then
    read under ``SELECT ... FOR UPDATE``.

    Args:
        user_id: Authenticated user.
        key: Client-provided idempotency key.
        payload: Request payload used to compute the request hash.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``.

    Raises:
        ValueError: ``IDEMPOTENCY_CONFLICT`` when the key was used with a
            different payload.
    """
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                user_id=user_id, key=key, request_hash=h, response_status=0, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(user_id=user_id, key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the final response so retries can replay it.

    Args:
        rec: The idempotency record.
        status_code: HTTP status of the response.
        body: JSON-serializable response body.
        order_id: Created order, when there is one.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])
