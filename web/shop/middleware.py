"""Request correlation and payload guard middleware for the shop API.

Every incoming request gets a request id, read from ``X-Request-Id`` when the
client (or an upstream proxy) supplies a usable one and generated otherwise.
The id is stored on the request, in a context variable read by the logging
filter and by the outbound HTTP clients, and echoed back in the
``X-Request-ID`` response header.

Payment gateway callbacks arrive as browser redirects without the header, so
they always receive a fresh id; the gateway authority is logged alongside it
by the payment views.
"""

import contextvars
import re
import uuid

from django.conf import settings
from django.http import JsonResponse

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")

# ids end up in log lines and upstream headers: keep them short and plain
_USABLE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _incoming_id(request):
    supplied = request.headers.get("X-Request-Id", "").strip()
    return supplied if _USABLE_ID.match(supplied) else uuid.uuid4().hex


class RequestIdMiddleware:
    """Tags each request with an id for the duration of the request.

    The context variable is restored once the response is built, so a worker
    thread never logs a finished request's id for the next one.
    """

    response_header = "X-Request-ID"

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.request_id = _incoming_id(request)
        token = REQUEST_ID_CTX.set(request.request_id)
        try:
            response = self.get_response(request)
        finally:
            REQUEST_ID_CTX.reset(token)
        response[self.response_header] = request.request_id
        return response


class ApiSizeLimitMiddleware:
    """Answers 413 for ``/api/`` bodies declared larger than ``API_MAX_BYTES``."""

    def __init__(self, get_response):
        self.get_response = get_response
        self.limit = settings.API_MAX_BYTES

    def __call__(self, request):
        if request.path.startswith("/api/") and self._declared_length(request) > self.limit:
            return JsonResponse(
                {"detail": "PAYLOAD_TOO_LARGE", "message": f"request body exceeds {self.limit} bytes"},
                status=413,
            )
        return self.get_response(request)

    @staticmethod
    def _declared_length(request) -> int:
        try:
            return int(request.META.get("CONTENT_LENGTH") or 0)
        except ValueError:
            return 0
