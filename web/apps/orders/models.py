import uuid

from django.conf import settings
from django.db import models


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders")

    class Status(models.TextChoices):
        PENDING_PAYMENT = "pendingPayment"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"
        REFUNDED = "refunded"
        FAILED = "failed"
        RETURNED = "returned"

    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING_PAYMENT)
    payment_method = models.CharField(max_length=16, default="zarinpal")
    shipping_method = models.CharField(max_length=16, default="standard")

    # Captured line items and address, written field by field by the repository
    items = models.JSONField(default=list)
    shipping_address = models.JSONField(default=dict)
    total_items = models.PositiveIntegerField(default=0)

    items_price = models.PositiveBigIntegerField(default=0)
    shipping_price = models.PositiveBigIntegerField(default=0)
    tax_price = models.PositiveBigIntegerField(default=0)
    discount = models.PositiveBigIntegerField(default=0)
    total_price = models.PositiveBigIntegerField(default=0)
    coupon_used = models.JSONField(null=True, blank=True)

    is_paid = models.BooleanField(default=False)
    paid_at = models.DateTimeField(null=True, blank=True)
    authority = models.CharField(max_length=64, blank=True, default="", db_index=True)
    ref_id = models.CharField(max_length=64, blank=True, default="")
    transaction_id = models.CharField(max_length=64, blank=True, default="")
    stock_committed = models.BooleanField(default=False)

    is_shipped = models.BooleanField(default=False)
    shipped_at = models.DateTimeField(null=True, blank=True)
    is_delivered = models.BooleanField(default=False)
    delivered_at = models.DateTimeField(null=True, blank=True)
    tracking_code = models.CharField(max_length=64, blank=True, default="")
    notes = models.TextField(blank=True, default="")

    invoice_number = models.CharField(max_length=32, unique=True, null=True, blank=True)
    invoice = models.JSONField(null=True, blank=True)

    erp_sync_status = models.CharField(max_length=16, default="pending")
    erp_sync_error = models.TextField(blank=True, default="")
    erp_invoice_id = models.CharField(max_length=64, blank=True, default="")
    erp_synced_at = models.DateTimeField(null=True, blank=True)
    erp_sync_attempts = models.PositiveIntegerField(default=0)

    refund_info = models.JSONField(null=True, blank=True)

    created_at = models.DateTimeField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["user", "-created_at"]), models.Index(fields=["status"])]


class CartModel(models.Model):
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="cart")
    coupon_code = models.CharField(max_length=32, blank=True, default="")
    coupon_discount = models.PositiveBigIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "carts"


class CartItem(models.Model):
    cart = models.ForeignKey(CartModel, on_delete=models.CASCADE, related_name="items")
    sku = models.CharField(max_length=32)
    variant = models.CharField(max_length=64, blank=True, default="")
    quantity = models.PositiveIntegerField()
    price = models.PositiveBigIntegerField()

    class Meta:
        db_table = "cart_items"
        ordering = ["id"]
        constraints = [
            models.UniqueConstraint(fields=["cart", "sku", "variant"], name="cart_item_unique_line"),
        ]


class CouponModel(models.Model):
    class DiscountType(models.TextChoices):
        PERCENTAGE = "percentage"
        FIXED = "fixed"

    code = models.CharField(max_length=32, unique=True)
    description = models.CharField(max_length=255, blank=True, default="")
    discount_type = models.CharField(max_length=16, choices=DiscountType.choices)
    value = models.DecimalField(max_digits=12, decimal_places=2)
    max_discount = models.PositiveBigIntegerField(default=0)
    min_purchase = models.PositiveBigIntegerField(default=0)
    starts_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(null=True, blank=True)
    is_permanent = models.BooleanField(default=False)
    usage_limit = models.PositiveIntegerField(default=0)
    used_count = models.PositiveIntegerField(default=0)
    user_usage_limit = models.PositiveIntegerField(default=1)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "coupons"

    def save(self, *args, **kwargs):
        self.code = self.code.upper()
        super().save(*args, **kwargs)


class CouponRedemption(models.Model):
    coupon = models.ForeignKey(CouponModel, on_delete=models.PROTECT, related_name="redemptions")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT)
    order_id = models.UUIDField()
    used_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "coupon_redemptions"
        indexes = [models.Index(fields=["coupon", "user"])]


class InvoiceCounter(models.Model):
    # One row per calendar day; last_value is the last sequence handed out
    day = models.DateField(primary_key=True)
    last_value = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "invoice_counters"


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=128)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
        constraints = [models.UniqueConstraint(fields=["user", "key"], name="idempotency_user_key")]
