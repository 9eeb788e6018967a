"""HTTP views for the ERP mirror: pending syncs, manual re-sync and the stock webhook."""

import hmac
import logging

from django.conf import settings
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.orders.providers import inventory_port

from .providers import get_erp_sync_service
from .schemas import ErpWebhookDTO, PendingQuery

logger = logging.getLogger(__name__)


def _sync_body(order) -> dict:
    return {
        "order_id": str(order.id),
        "invoice_number": order.invoice.number if order.invoice else None,
        "erp_sync_status": order.erp.status.value,
        "erp_invoice_id": order.erp.invoice_id,
        "erp_sync_error": order.erp.error,
        "erp_sync_attempts": order.erp.attempts,
    }


class PendingSyncView(APIView):
    """Paid orders not yet mirrored into the ERP that still have attempts left."""

    permission_classes = [IsAdminUser]

    def get(self, request):
        q = PendingQuery.model_validate(request.query_params.dict())
        orders = get_erp_sync_service().pending_orders(q.limit)
        return Response({"count": len(orders), "results": [_sync_body(o) for o in orders]}, status=200)


class ManualSyncView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, oid):
        service = get_erp_sync_service()
        order = service.orders.get(oid)
        if order is None:
            return Response(
                {"detail": "ORDER_NOT_FOUND", "message": "order not found"},
                status=status.HTTP_404_NOT_FOUND,
            )
        service.sync_order(oid)
        return Response(_sync_body(service.orders.get(oid)), status=200)


class ErpWebhookView(APIView):
    """Stock changes pushed by Holoo, authenticated by ``X-API-Key``."""

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        api_key = request.headers.get("X-API-Key", "")
        expected = settings.HOLOO_WEBHOOK_API_KEY
        if not expected or not hmac.compare_digest(api_key.encode(), expected.encode()):
            return Response(
                {"detail": "UNAUTHORIZED", "message": "invalid API key"},
                status=status.HTTP_401_UNAUTHORIZED,
            )

        dto = ErpWebhookDTO.model_validate(request.data)
        if not dto.is_stock_update:
            return Response({"applied": 0, "ignored": True}, status=200)

        store = inventory_port()
        applied, unknown = 0, []
        for change in dto.changedfields:
            if change.few is None:
                continue
            if store.set_stock_by_erp_code(change.erp_code, change.few) is None:
                unknown.append(change.erp_code)
                continue
            applied += 1
        logger.info("erp webhook applied", extra={"applied": applied, "unknown": unknown})
        return Response({"applied": applied, "unknown": unknown}, status=200)
