"""HTTP views for payments.

The verify endpoint is the gateway callback: the customer's browser lands on
it after paying, so it is unauthenticated and always answers with a redirect
to the storefront result page instead of JSON.
"""

from urllib.parse import urlencode

from django.conf import settings
from django.core.paginator import Paginator
from django.http import HttpResponseRedirect
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.orders.schemas import OrderReadDTO

from .models import CustomerAccount, WalletTransaction
from .providers import get_payment_service
from .schemas import RefundDTO, WalletTransactionQuery


def result_url(outcome: str, order_id, ref_id=None, message: str = "") -> str:
    """Storefront page for a callback outcome: ``/payment/{success|cancel|failed}``."""
    params = {"orderId": str(order_id)}
    if outcome == "success" and ref_id:
        params["refId"] = ref_id
    if outcome == "failed" and message:
        params["message"] = message
    return f"{settings.FRONTEND_URL.rstrip('/')}/payment/{outcome}?{urlencode(params)}"


class PaymentRequestView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"

    def post(self, request, oid):
        req = get_payment_service().request_payment(oid, request.user.id)
        return Response({"authority": req.authority, "url": req.redirect_url}, status=200)


class PaymentVerifyView(APIView):
    """Gateway callback: ``?Authority=...&Status=OK|NOK``."""

    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request, oid):
        result = get_payment_service().verify_callback(
            oid,
            request.query_params.get("Authority", ""),
            request.query_params.get("Status", ""),
        )
        return HttpResponseRedirect(result_url(result.outcome, result.order_id, result.ref_id, result.message))


class PaymentStatusView(APIView):
    def get(self, request, oid):
        scope = None if request.user.is_staff else request.user.id
        order = get_payment_service().lifecycle.get(oid, scope)
        return Response(
            {
                "order_id": str(order.id),
                "status": order.status.value,
                "payment_method": order.payment_method.value,
                "is_paid": order.is_paid,
                "paid_at": order.paid_at.isoformat() if order.paid_at else None,
                "ref_id": order.ref_id,
                "total_price": order.totals.total,
            },
            status=200,
        )


class WalletPaymentView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"

    def post(self, request, oid):
        order = get_payment_service().pay_with_wallet(oid, request.user.id)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json"), status=200)


class RefundView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, oid):
        dto = RefundDTO.model_validate(request.data or {})
        order = get_payment_service().refund(oid, dto.amount, dto.reason)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json"), status=status.HTTP_200_OK)


class UnverifiedPaymentsView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        return Response({"authorities": get_payment_service().unverified()}, status=200)


class WalletTransactionsView(APIView):
    """The user's wallet balance and ledger, newest first, filterable by ``type``."""

    def get(self, request):
        q = WalletTransactionQuery.model_validate(request.query_params.dict())
        account = CustomerAccount.objects.filter(user_id=request.user.id).first()
        qs = WalletTransaction.objects.filter(account__user_id=request.user.id)
        if q.type:
            qs = qs.filter(type=q.type)
        p = Paginator(qs.order_by("-created_at", "-id"), q.page_size)
        page_obj = p.get_page(q.page)
        return Response(
            {
                "balance": account.wallet_balance if account else 0,
                "loyalty_points": account.loyalty_points if account else 0,
                "count": p.count,
                "page": page_obj.number,
                "page_size": q.page_size,
                "results": [
                    {
                        "amount": t.amount,
                        "type": t.type,
                        "description": t.description,
                        "order_id": str(t.order_id) if t.order_id else None,
                        "created_at": t.created_at.isoformat(),
                    }
                    for t in page_obj.object_list
                ],
            },
            status=200,
        )
