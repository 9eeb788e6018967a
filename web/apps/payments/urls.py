from django.urls import path

from .views import (
    PaymentRequestView,
    PaymentStatusView,
    PaymentVerifyView,
    RefundView,
    UnverifiedPaymentsView,
    WalletPaymentView,
    WalletTransactionsView,
)

app_name = "payments"

urlpatterns = [
    path("unverified/", UnverifiedPaymentsView.as_view(), name="payments-unverified"),
    path("wallet/transactions/", WalletTransactionsView.as_view(), name="payments-wallet-transactions"),
    path("<uuid:oid>/request/", PaymentRequestView.as_view(), name="payments-request"),
    path("<uuid:oid>/verify/", PaymentVerifyView.as_view(), name="payments-verify"),
    path("<uuid:oid>/status/", PaymentStatusView.as_view(), name="payments-status"),
    path("<uuid:oid>/wallet/", WalletPaymentView.as_view(), name="payments-wallet"),
    path("<uuid:oid>/refund/", RefundView.as_view(), name="payments-refund"),
]
