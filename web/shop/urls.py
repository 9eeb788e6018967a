from django.urls import include, path

urlpatterns = [
    path("", include("apps.monitoring.urls")),
    path("api/orders/", include("apps.orders.urls")),
    path("api/cart/", include("apps.orders.cart_urls")),
    path("api/coupons/", include("apps.orders.coupon_urls")),
    path("api/payments/", include("apps.payments.urls")),
    path("api/erp/", include("apps.erp.urls")),
]
