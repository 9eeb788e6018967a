from django.conf import settings
from django.db import models


class CustomerAccount(models.Model):
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="account")
    phone = models.CharField(max_length=20, blank=True, default="")
    wallet_balance = models.BigIntegerField(default=0)
    loyalty_points = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "customer_accounts"
        constraints = [
            models.CheckConstraint(condition=models.Q(wallet_balance__gte=0), name="wallet_balance_non_negative"),
        ]


class WalletTransaction(models.Model):
    class Type(models.TextChoices):
        PURCHASE = "purchase"
        REFUND = "refund"
        DEPOSIT = "deposit"
        WITHDRAWAL = "withdrawal"

    account = models.ForeignKey(CustomerAccount, on_delete=models.CASCADE, related_name="transactions")
    # Signed: purchases and withdrawals are negative
    amount = models.BigIntegerField()
    type = models.CharField(max_length=16, choices=Type.choices)
    description = models.CharField(max_length=255, blank=True, default="")
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "wallet_transactions"
        ordering = ["-created_at", "-id"]
