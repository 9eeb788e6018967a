from django.urls import path

from .views import ErpWebhookView, ManualSyncView, PendingSyncView

app_name = "erp"

urlpatterns = [
    path("pending/", PendingSyncView.as_view(), name="erp-pending"),
    path("orders/<uuid:oid>/sync/", ManualSyncView.as_view(), name="erp-sync-order"),
    path("webhook/", ErpWebhookView.as_view(), name="erp-webhook"),
]
