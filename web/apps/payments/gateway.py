"""Zarinpal payment gateway client.

Talks to the Zarinpal REST WebGate (``PaymentRequest.json``,
``PaymentVerification.json``, ``UnverifiedTransactions.json``,
``RefundPayment.json``) through ``shop.http.call_with_retry`` under the
``zarinpal`` circuit breaker. A provider status other than success raises
``GatewayError`` carrying the mapped message; transport failures surface as
``httpx`` errors.

Refunds are never retried: a lost response must not turn into a second
refund.
"""

import logging
from typing import Optional

from django.conf import settings

from apps.orders.domain import PaymentRequest
from apps.orders.errors import GatewayError
from shop.http import breaker_for, call_with_retry

logger = logging.getLogger(__name__)

SANDBOX_API = "https://sandbox.zarinpal.com/pg/rest/WebGate"
PRODUCTION_API = "https://api.zarinpal.com/pg/rest/WebGate"
SANDBOX_START_PAY = "https://sandbox.zarinpal.com/pg/StartPay/"
PRODUCTION_START_PAY = "https://www.zarinpal.com/pg/StartPay/"

STATUS_OK = 100
STATUS_ALREADY_VERIFIED = 101
UNKNOWN_ERROR = "unknown error"

STATUS_MESSAGES = {
    -1: "incomplete request data",
    -2: "invalid IP address or merchant code",
    -3: "amount not allowed by Shaparak limits",
    -4: "merchant verification level below silver",
    -11: "request not found",
    -12: "request cannot be edited",
    -21: "no financial operation found for this transaction",
    -22: "transaction failed",
    -33: "transaction amount does not match the paid amount",
    -34: "transaction split limit exceeded",
    -40: "access to the method is not allowed",
    -41: "invalid AdditionalData",
    -42: "payment id lifetime must be between 30 minutes and 45 days",
    -54: "request is archived",
    101: "payment succeeded and was already verified",
}


def status_message(status) -> str:
    """Map a Zarinpal status code to its message; unmapped codes are ``unknown error``."""
    try:
        return STATUS_MESSAGES.get(int(status), UNKNOWN_ERROR)
    except (TypeError, ValueError):
        return UNKNOWN_ERROR


class ZarinpalGateway:
    """``PaymentGatewayPort`` implementation for Zarinpal.

    Args:
        merchant_id: Merchant code.
        callback_url: Base callback URL; the order id and ``verify/`` are appended.
        sandbox: Use the sandbox endpoints.
        timeout: HTTP timeout in seconds.
    """

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        callback_url: Optional[str] = None,
        sandbox: Optional[bool] = None,
        timeout: Optional[float] = None,
    ):
        self.merchant_id = merchant_id if merchant_id is not None else settings.ZARINPAL_MERCHANT_ID
        self.callback_url = (callback_url or settings.ZARINPAL_CALLBACK_URL).rstrip("/")
        self.sandbox = settings.ZARINPAL_SANDBOX if sandbox is None else sandbox
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.base_url = SANDBOX_API if self.sandbox else PRODUCTION_API
        self.breaker = breaker_for("zarinpal")

    def _post(self, endpoint: str, payload: dict, max_retries: Optional[int] = None) -> dict:
        resp = call_with_retry(
            self.breaker,
            "post",
            f"{self.base_url}/{endpoint}",
            timeout=self.timeout,
            json={"MerchantID": self.merchant_id, **payload},
            max_retries=max_retries,
        )
        return resp.json()

    def start_pay_url(self, authority: str) -> str:
        return f"{SANDBOX_START_PAY if self.sandbox else PRODUCTION_START_PAY}{authority}"

    def create_payment_request(self, amount: int, description: str, email: str, mobile: str, order_id) -> PaymentRequest:
        """Open a payment attempt and return its authority and the redirect URL.

        Raises:
            GatewayError: Status other than 100.
        """
        data = self._post(
            "PaymentRequest.json",
            {
                "Amount": amount,
                "Description": description,
                "Email": email,
                "Mobile": mobile,
                "CallbackURL": f"{self.callback_url}/{order_id}/verify/",
            },
        )
        status = data.get("Status")
        if status != STATUS_OK:
            raise GatewayError(f"payment request failed: {status_message(status)}", status=status)
        authority = data["Authority"]
        return PaymentRequest(authority=authority, redirect_url=self.start_pay_url(authority))

    def verify(self, authority: str, amount: int) -> str:
        """Verify a payment; 101 (already verified) counts as success.

        Returns:
            str: The gateway reference id.

        Raises:
            GatewayError: Any other status.
        """
        data = self._post("PaymentVerification.json", {"Authority": authority, "Amount": amount})
        status = data.get("Status")
        if status not in (STATUS_OK, STATUS_ALREADY_VERIFIED):
            raise GatewayError(f"payment verification failed: {status_message(status)}", status=status)
        return str(data.get("RefID", ""))

    def refund(self, authority: str, amount: int) -> str:
        data = self._post("RefundPayment.json", {"Authority": authority, "Amount": amount}, max_retries=0)
        status = data.get("Status")
        if status != STATUS_OK:
            raise GatewayError(f"refund failed: {status_message(status)}", status=status)
        return str(data.get("RefID", ""))

    def list_unverified(self) -> list:
        data = self._post("UnverifiedTransactions.json", {})
        status = data.get("Status")
        if status != STATUS_OK:
            raise GatewayError(f"listing unverified transactions failed: {status_message(status)}", status=status)
        return list(data.get("Authorities") or [])
