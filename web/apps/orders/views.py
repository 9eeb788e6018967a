"""HTTP views for orders, carts and coupons.

Views are kept intentionally small: they validate requests with pydantic,
delegate to the services from ``providers`` and shape the result with the
read schemas. Domain and upstream errors propagate to
``shop.exceptions.exception_handler``, which turns them into
``{"detail": CODE, "message": text}`` responses; only order creation handles
them itself, because its response is stored for idempotent replays.

Idempotency: when an ``Idempotency-Key`` header is sent with
``POST /api/orders/``, the first request creates a record and stores its
response once processed. Retries with the same payload replay the stored
response; the same key with a different payload returns 409.
"""

from datetime import timedelta

import httpx
from django.core.paginator import Paginator
from django.db.models import Count, Q, Sum
from django.db.models.functions import TruncDate
from django.utils import timezone
from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from shop.exceptions import error_body, error_status, is_circuit_error, upstream_unavailable_body

from .coupons import validate_terms
from .domain import Coupon, ShippingAddress
from .errors import ConflictError, NotFoundError, OrderError, ValidationError
from .idempotency import finalize, get_or_create_idempotent
from .models import CouponModel, OrderModel
from .providers import get_cart_service, get_coupon_store, get_order_lifecycle
from .repository import order_from_row
from .schemas import (
    AddCartItemDTO,
    ApplyCouponDTO,
    CancelOrderDTO,
    CartReadDTO,
    CouponListQuery,
    CouponReadDTO,
    CreateCouponDTO,
    CreateOrderDTO,
    InvoiceReadDTO,
    OrderListQuery,
    OrderReadDTO,
    PageQuery,
    UpdateCartItemDTO,
    UpdateCouponDTO,
    UpdateStatusDTO,
    ValidateCouponDTO,
)


def _owner_scope(request):
    """Admins act on any order; other users only on their own."""
    return None if request.user.is_staff else request.user.id


def _order_body(order) -> dict:
    return OrderReadDTO.from_domain(order).model_dump(mode="json")


def _page(qs, page: int, page_size: int) -> dict:
    p = Paginator(qs, page_size)
    page_obj = p.get_page(page)
    return {
        "count": p.count,
        "page": page_obj.number,
        "page_size": page_size,
        "results": [_order_body(order_from_row(o)) for o in page_obj.object_list],
    }


class OrdersCollectionView(APIView):
    """Place an order from the cart (POST) or list all orders (GET, admin).

    The list accepts ``status``, ``payment_method``, ``is_paid``, ``user``,
    ``date_from``, ``date_to`` and ``search`` (invoice number) filters and
    returns a per-status count of the filtered orders next to the page.
    """

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get_permissions(self):
        if self.request.method == "GET":
            return [IsAdminUser()]
        return [IsAuthenticated()]

    def get(self, request):
        q = OrderListQuery.model_validate(request.query_params.dict())
        qs = OrderModel.objects.all()
        if q.status:
            qs = qs.filter(status=q.status.value)
        if q.payment_method:
            qs = qs.filter(payment_method=q.payment_method.value)
        if q.is_paid is not None:
            qs = qs.filter(is_paid=q.is_paid)
        if q.user:
            qs = qs.filter(user_id=q.user)
        if q.date_from:
            qs = qs.filter(created_at__gte=q.date_from)
        if q.date_to:
            qs = qs.filter(created_at__lte=q.date_to)
        if q.search:
            qs = qs.filter(Q(invoice_number__icontains=q.search) | Q(tracking_code__icontains=q.search))

        summary = {row["status"]: row["n"] for row in qs.order_by().values("status").annotate(n=Count("id"))}
        body = _page(qs.order_by("-created_at"), q.page, q.page_size)
        body["summary"] = summary
        return Response(body, status=200)

    def post(self, request):
        """Create an order.

        Returns:
            Response: One of the following responses.
            - 201 with the order when it is created.
            - the stored status and body when the same idempotency key and
              payload are retried (``Idempotent-Replay: true``).
            - 409 ``IDEMPOTENCY_CONFLICT`` when the key is reused with a
              different payload, ``IDEMPOTENCY_IN_PROGRESS`` while the first
              request is still running.
            - 400 for invalid payloads, empty carts, stock shortages and
              coupons that no longer apply; 404 for unknown products.
            - 503 ``UPSTREAM_UNAVAILABLE`` when the inventory service is down.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        dto = CreateOrderDTO.model_validate(request.data)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(request.user.id, idem_key, request.data)
            except ValueError:
                return Response(
                    {"detail": "IDEMPOTENCY_CONFLICT", "message": "key reused with a different payload"},
                    status=status.HTTP_409_CONFLICT,
                )
            if existing:
                if not rec.response_status:
                    return Response(
                        {"detail": "IDEMPOTENCY_IN_PROGRESS", "message": "the first request is still running"},
                        status=status.HTTP_409_CONFLICT,
                    )
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        a = dto.shipping_address
        try:
            order = get_order_lifecycle().create_order(
                request.user.id,
                ShippingAddress(a.full_name, a.address, a.postal_code, a.phone),
                payment_method=dto.payment_method,
                shipping_method=dto.shipping_method,
                notes=dto.notes,
            )
        except OrderError as e:
            body, code = error_body(e), error_status(e)
            if rec:
                finalize(rec, code, body)
            return Response(body, status=code)
        except (httpx.HTTPError, RuntimeError) as e:
            if not isinstance(e, httpx.HTTPError) and not is_circuit_error(e):
                raise
            body = upstream_unavailable_body()
            if rec:
                finalize(rec, 503, body)
            return Response(body, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        # 4) Response
        body = _order_body(order)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class MyOrdersView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        q = PageQuery.model_validate(request.query_params.dict())
        qs = OrderModel.objects.filter(user_id=request.user.id).order_by("-created_at")
        return Response(_page(qs, q.page, q.page_size), status=200)


class OrderDetailView(APIView):
    """Read an order (owner or admin) or change its status (admin)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get_permissions(self):
        if self.request.method == "PATCH":
            return [IsAdminUser()]
        return [IsAuthenticated()]

    def get(self, request, oid):
        order = get_order_lifecycle().get(oid, _owner_scope(request))
        return Response(_order_body(order), status=200)

    def patch(self, request, oid):
        dto = UpdateStatusDTO.model_validate(request.data)
        order = get_order_lifecycle().update_status(oid, dto.status, dto.tracking_code)
        return Response(_order_body(order), status=200)


class CancelOrderView(APIView):
    def post(self, request, oid):
        dto = CancelOrderDTO.model_validate(request.data or {})
        order = get_order_lifecycle().cancel(oid, _owner_scope(request), dto.reason)
        return Response(_order_body(order), status=200)


class OrderInvoiceView(APIView):
    def get(self, request, oid):
        invoice = get_order_lifecycle().issue_invoice(oid, _owner_scope(request))
        return Response(InvoiceReadDTO.from_domain(invoice).model_dump(mode="json"), status=200)


# ---- Cart ----
def _cart_body(cart) -> dict:
    return CartReadDTO.from_domain(cart).model_dump(mode="json")


class CartView(APIView):
    def get(self, request):
        return Response(_cart_body(get_cart_service().get(request.user.id)))

    def delete(self, request):
        return Response(_cart_body(get_cart_service().clear(request.user.id)))


class CartItemsView(APIView):
    def post(self, request):
        dto = AddCartItemDTO.model_validate(request.data)
        cart = get_cart_service().add_item(request.user.id, dto.sku, dto.quantity, dto.variant)
        return Response(_cart_body(cart), status=200)


class CartItemDetailView(APIView):
    def patch(self, request, sku: str):
        dto = UpdateCartItemDTO.model_validate(request.data)
        cart = get_cart_service().update_quantity(request.user.id, sku.upper(), dto.quantity)
        return Response(_cart_body(cart), status=200)

    def delete(self, request, sku: str):
        cart = get_cart_service().remove_item(request.user.id, sku.upper())
        return Response(_cart_body(cart), status=200)


class CartCouponView(APIView):
    def post(self, request):
        dto = ApplyCouponDTO.model_validate(request.data)
        return Response(_cart_body(get_cart_service().apply_coupon(request.user.id, dto.code)))

    def delete(self, request):
        return Response(_cart_body(get_cart_service().remove_coupon(request.user.id)))


# ---- Coupons ----
def _coupon_body(coupon) -> dict:
    return CouponReadDTO.model_validate(coupon).model_dump(mode="json")


class CouponCollectionView(APIView):
    """List coupons (``is_active``, ``expired`` and ``search`` filters) or create one."""

    permission_classes = [IsAdminUser]

    def get(self, request):
        q = CouponListQuery.model_validate(request.query_params.dict())
        qs = CouponModel.objects.all()
        if q.is_active is not None:
            qs = qs.filter(is_active=q.is_active)
        if q.expired is not None:
            lapsed = Q(is_permanent=False, ends_at__lt=timezone.now())
            qs = qs.filter(lapsed) if q.expired else qs.exclude(lapsed)
        if q.search:
            qs = qs.filter(code__icontains=q.search)
        p = Paginator(qs.order_by("-created_at", "code"), q.page_size)
        page_obj = p.get_page(q.page)
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": q.page_size,
                "results": [_coupon_body(c) for c in page_obj.object_list],
            },
            status=200,
        )

    def post(self, request):
        dto = CreateCouponDTO.model_validate(request.data)
        value = validate_terms(dto.discount_type, dto.value)
        store = get_coupon_store()
        if store.get(dto.code) is not None:
            raise ConflictError(f"coupon {dto.code} already exists", code="COUPON_EXISTS")
        coupon = store.create(
            Coupon(
                code=dto.code,
                discount_type=dto.discount_type,
                value=value,
                max_discount=dto.max_discount,
                min_purchase=dto.min_purchase,
                starts_at=dto.starts_at,
                ends_at=dto.ends_at,
                is_permanent=dto.is_permanent,
                usage_limit=dto.usage_limit,
                user_usage_limit=dto.user_usage_limit,
                is_active=dto.is_active,
            ),
            description=dto.description,
        )
        return Response(_coupon_body(coupon), status=status.HTTP_201_CREATED)


class CouponDetailView(APIView):
    permission_classes = [IsAdminUser]

    def _coupon(self, code: str):
        coupon = get_coupon_store().get(code)
        if coupon is None:
            raise NotFoundError(f"coupon {code.upper()} not found", code="COUPON_NOT_FOUND")
        return coupon

    def get(self, request, code: str):
        return Response(_coupon_body(self._coupon(code)), status=200)

    def patch(self, request, code: str):
        """Update coupon terms.

        The merged terms are checked like a new coupon: the value against its
        discount type and the validity window.
        """
        current = self._coupon(code)
        changes = UpdateCouponDTO.model_validate(request.data).changes()
        discount_type = changes.get("discount_type", current.discount_type)
        if "discount_type" in changes or "value" in changes:
            changes["value"] = validate_terms(discount_type, changes.get("value", current.value))
        starts_at = changes.get("starts_at", current.starts_at)
        ends_at = changes.get("ends_at", current.ends_at)
        if starts_at and ends_at and ends_at <= starts_at:
            raise ValidationError("ends_at must be after starts_at", code="INVALID_COUPON_WINDOW")
        if "discount_type" in changes:
            changes["discount_type"] = discount_type.value
        coupon = get_coupon_store().update(current.code, changes)
        return Response(_coupon_body(coupon), status=200)

    def delete(self, request, code: str):
        coupon = self._coupon(code)
        get_coupon_store().delete(coupon.code)
        return Response(status=status.HTTP_204_NO_CONTENT)


class CouponValidateView(APIView):
    """Check a coupon for the current user before applying it."""

    def post(self, request):
        dto = ValidateCouponDTO.model_validate(request.data)
        service = get_cart_service()
        cart_total = dto.cart_total if dto.cart_total is not None else service.get(request.user.id).total
        coupon, evaluation = service.check_coupon(request.user.id, dto.code, cart_total)
        return Response(
            {
                "code": coupon.code,
                "valid": True,
                "cart_total": cart_total,
                "discount_amount": evaluation.discount_amount,
                "final_price": cart_total - evaluation.discount_amount,
            },
            status=200,
        )


# ---- Stats ----
# Orders that never turn into revenue
NON_SALE_STATUSES = ("cancelled", "refunded", "failed")


class OrderStatsView(APIView):
    """Order counts and sales totals for the admin dashboard.

    Sales leave out cancelled, refunded and failed orders; the daily series
    covers the last seven days in the configured time zone.
    """

    permission_classes = [IsAdminUser]

    def get(self, request):
        qs = OrderModel.objects.all()
        by_status = qs.order_by().values("status").annotate(n=Count("id"))
        sales = qs.exclude(status__in=NON_SALE_STATUSES)
        since = timezone.localdate() - timedelta(days=6)
        daily = (
            sales.annotate(day=TruncDate("created_at"))
            .filter(day__gte=since)
            .values("day")
            .annotate(count=Count("id"), sales=Sum("total_price"))
            .order_by("day")
        )
        return Response(
            {
                "total_orders": qs.count(),
                "paid_orders": qs.filter(is_paid=True).count(),
                "total_sales": sales.aggregate(total=Sum("total_price"))["total"] or 0,
                "by_status": {row["status"]: row["n"] for row in by_status},
                "last_7_days": [
                    {"date": row["day"].isoformat(), "count": row["count"], "sales": row["sales"]} for row in daily
                ],
            },
            status=200,
        )
