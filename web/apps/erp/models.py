from django.db import models


class ProductSyncState(models.Model):
    """Outcome of the last stock push for one product mirrored in the ERP."""

    class Status(models.TextChoices):
        PENDING = "pending"
        SUCCESS = "success"
        FAILED = "failed"

    sku = models.CharField(max_length=32, unique=True)
    erp_code = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    error = models.TextField(blank=True, default="")
    attempts = models.PositiveIntegerField(default=0)
    last_stock = models.IntegerField(null=True, blank=True)
    synced_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "erp_product_sync"
