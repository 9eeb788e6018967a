"""User store for payments: contact details, wallet ledger, loyalty points."""

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import F

from apps.orders.domain import CustomerContact

from .models import CustomerAccount, WalletTransaction


class CustomerRepository:
    """``CustomerStore`` backed by ``CustomerAccount`` and ``WalletTransaction``.

    Accounts are created on first use. Balance changes are single conditional
    UPDATE statements; the ledger row is written in the same transaction.
    """

    def _account(self, user_id: int) -> CustomerAccount:
        account, _ = CustomerAccount.objects.get_or_create(user_id=user_id)
        return account

    def contact(self, user_id: int) -> CustomerContact:
        user = get_user_model().objects.filter(pk=user_id).first()
        if user is None:
            return CustomerContact()
        return CustomerContact(
            full_name=user.get_full_name(),
            email=user.email or "",
            mobile=self._account(user_id).phone,
        )

    def append_ledger(self, user_id: int, amount: int, kind: str, description: str, order_id=None) -> None:
        WalletTransaction.objects.create(
            account=self._account(user_id),
            amount=amount,
            type=kind,
            description=description,
            order_id=order_id,
        )

    def debit_wallet(self, user_id: int, amount: int, description: str, order_id=None) -> bool:
        """Take ``amount`` from the wallet if the balance covers it.

        Returns:
            bool: False when the balance is insufficient; nothing is written.
        """
        account = self._account(user_id)
        with transaction.atomic():
            updated = CustomerAccount.objects.filter(pk=account.pk, wallet_balance__gte=amount).update(
                wallet_balance=F("wallet_balance") - amount
            )
            if not updated:
                return False
            self.append_ledger(user_id, -amount, WalletTransaction.Type.PURCHASE, description, order_id)
        return True

    def credit_wallet(self, user_id: int, amount: int, kind: str, description: str, order_id=None) -> None:
        account = self._account(user_id)
        with transaction.atomic():
            CustomerAccount.objects.filter(pk=account.pk).update(wallet_balance=F("wallet_balance") + amount)
            self.append_ledger(user_id, amount, kind, description, order_id)

    def add_loyalty(self, user_id: int, points: int) -> None:
        if points <= 0:
            return
        account = self._account(user_id)
        CustomerAccount.objects.filter(pk=account.pk).update(loyalty_points=F("loyalty_points") + points)
