"""Persistence of per-product ERP sync results."""

from datetime import datetime
from typing import Optional

from django.db.models import F

from .models import ProductSyncState


class ProductSyncRepository:
    def record(
        self,
        sku: str,
        erp_code: str,
        ok: bool,
        stock: Optional[int],
        at: datetime,
        error: str = "",
    ) -> None:
        """Store the outcome of one stock push and bump its attempt count."""
        state, _ = ProductSyncState.objects.get_or_create(sku=sku, defaults={"erp_code": erp_code})
        ProductSyncState.objects.filter(pk=state.pk).update(
            erp_code=erp_code,
            status=ProductSyncState.Status.SUCCESS if ok else ProductSyncState.Status.FAILED,
            error=error,
            attempts=F("attempts") + 1,
            last_stock=stock,
            synced_at=at,
        )

    def get(self, sku: str) -> Optional[ProductSyncState]:
        return ProductSyncState.objects.filter(sku=sku).first()
