from django.urls import path

from .views import (
    CancelOrderView,
    MyOrdersView,
    OrderDetailView,
    OrderInvoiceView,
    OrdersCollectionView,
    OrderStatsView,
)

app_name = "orders"

urlpatterns = [
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list (admin) / POST create
    path("me/", MyOrdersView.as_view(), name="orders-me"),
    path("stats/", OrderStatsView.as_view(), name="orders-stats"),
    path("<uuid:oid>/", OrderDetailView.as_view(), name="orders-detail"),
    path("<uuid:oid>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("<uuid:oid>/invoice/", OrderInvoiceView.as_view(), name="orders-invoice"),
]
