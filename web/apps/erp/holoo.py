"""Holoo ERP REST client.

The Holoo API authenticates with a token obtained from ``POST /Login`` and
sent verbatim in the ``Authorization`` header. Tokens live 30 minutes on the
server; the client caches one for ``HOLOO_TOKEN_LIFESPAN_SECS`` (25 minutes)
and logs in again when it expires. A 401 drops the cached token, logs in and
retries the original call exactly once.

When the integration is disabled every call is simulated: it is logged and
answers with an empty payload, so local development never reaches the ERP.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

import httpx
from django.conf import settings
from django.utils import timezone

from apps.orders.domain import Order
from apps.orders.errors import SyncError
from shop.http import request_headers

logger = logging.getLogger(__name__)

SALE_INVOICE_TYPE = 2
DEFAULT_CUSTOMER_NAME = "Customer"


def invoice_payload(order: Order, now: datetime) -> dict:
    """Build the ``POST /Invoice`` body for an order.

    Paid orders are booked as cash (``SumNaghd``); unpaid ones, i.e.
    cash-on-delivery, as credit (``SumNesiyeh``).

    Args:
        order: The order to mirror.
        now: Local time used for the ``Date`` and ``Time`` fields.

    Returns:
        dict: JSON-serializable invoice document.
    """
    total = order.totals.total
    detail = [
        {
            "Row": row,
            "ProductCode": item.erp_item_code or "",
            "ProductName": item.name,
            "ProductErpCode": item.erp_code or "",
            "Few": item.quantity,
            "Karton": 0,
            "Price": item.price,
            "comment": "",
            "SumPrice": item.line_total,
            "Levy": 0,
            "Scot": 0,
            "PersentDiscount": 0,
            "Discount": 0,
        }
        for row, item in enumerate(order.items, start=1)
    ]
    return {
        "Type": SALE_INVOICE_TYPE,
        "CustomerName": order.shipping_address.full_name or DEFAULT_CUSTOMER_NAME,
        "Date": now.strftime("%Y/%m/%d"),
        "Time": now.strftime("%H:%M:%S"),
        "SumNaghd": total if order.is_paid else 0,
        "SumCard": 0,
        "SumNesiyeh": 0 if order.is_paid else total,
        "SumDiscount": order.totals.discount,
        "SumCheck": 0,
        "SumLevy": 0,
        "SumScot": 0,
        "SumPrice": total,
        "TypeName": "Sale",
        "Detail": detail,
    }


class HolooClient:
    """Token-authenticated client for the Holoo API.

    Args:
        base_url: API root, e.g. ``https://api.holoo.app/v1``.
        username: Holoo user name.
        password: Holoo password.
        dbname: Holoo database name.
        enabled: When False every call is simulated.
        token_lifespan: Seconds a token is reused before logging in again.
        timeout: HTTP timeout in seconds.
        clock: Monotonic clock used for the token expiry.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        dbname: Optional[str] = None,
        enabled: Optional[bool] = None,
        token_lifespan: Optional[float] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = (base_url or settings.HOLOO_API_URL).rstrip("/")
        self.credentials = {
            "username": settings.HOLOO_USERNAME if username is None else username,
            "userpass": settings.HOLOO_PASSWORD if password is None else password,
            "dbname": settings.HOLOO_DBNAME if dbname is None else dbname,
        }
        self.enabled = settings.HOLOO_ENABLED if enabled is None else enabled
        self.token_lifespan = settings.HOLOO_TOKEN_LIFESPAN_SECS if token_lifespan is None else token_lifespan
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    # ---- authentication ----
    def login(self) -> str:
        """Obtain and cache a fresh token.

        Raises:
            SyncError: The ERP rejected the credentials or was unreachable.
        """
        if not self.enabled:
            logger.info("holoo disabled, simulating login")
            with self._lock:
                self._token = "simulated-token"
                self._expires_at = self.clock() + self.token_lifespan
                return self._token

        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    f"{self.base_url}/Login",
                    json={"userinfo": self.credentials},
                    headers=request_headers(),
                )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            logger.error("holoo login failed", extra={"error": str(e)})
            raise SyncError(f"holoo login failed: {e}") from e

        if not (data.get("State") and data.get("Token")):
            raise SyncError(f"holoo login failed: {data.get('Error') or 'no token returned'}")
        with self._lock:
            self._token = data["Token"]
            self._expires_at = self.clock() + self.token_lifespan
        logger.info("holoo login succeeded")
        return data["Token"]

    def token(self) -> str:
        """Return the cached token, logging in when missing or expired."""
        with self._lock:
            if self._token and self.clock() < self._expires_at:
                return self._token
        return self.login()

    def _invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    # ---- transport ----
    def request(self, method: str, endpoint: str, json: Optional[dict] = None) -> dict:
        """Call an authenticated endpoint and return its JSON body.

        Raises:
            SyncError: Login failed.
            httpx.HTTPError: Transport failure or error status.
        """
        if not self.enabled:
            logger.info("holoo disabled, simulating request", extra={"method": method, "endpoint": endpoint})
            return {"success": True, "data": []}

        resp = self._send(method, endpoint, json)
        if resp.status_code == 401:
            logger.warning("holoo token rejected, logging in again", extra={"endpoint": endpoint})
            self._invalidate()
            resp = self._send(method, endpoint, json)
        if resp.status_code >= 400:
            logger.error(
                "holoo request failed",
                extra={"method": method, "endpoint": endpoint, "status": resp.status_code},
            )
        resp.raise_for_status()
        return resp.json()

    def _send(self, method: str, endpoint: str, json: Optional[dict]) -> httpx.Response:
        kwargs = {"headers": request_headers({"Authorization": self.token()})}
        if json is not None:
            kwargs["json"] = json
        with httpx.Client(timeout=self.timeout) as client:
            return getattr(client, method.lower())(f"{self.base_url}/{endpoint}", **kwargs)

    # ---- catalog ----
    def get_products(self, page: int = 1, limit: int = 100) -> list:
        return list(self.request("get", f"Product/{page}/{limit}").get("product") or [])

    def get_main_groups(self) -> list:
        return list(self.request("get", "MainGroup").get("maingroup") or [])

    def get_side_groups(self) -> list:
        return list(self.request("get", "SideGroup").get("sidegroup") or [])

    def update_inventory(self, erp_code: str, stock: int) -> None:
        """Overwrite the ERP stock (``Few``) of one product.

        Raises:
            SyncError: The ERP did not acknowledge the update.
        """
        if not self.enabled:
            logger.info("holoo disabled, simulating stock update", extra={"erp_code": erp_code, "stock": stock})
            return
        data = self.request("put", "Product", {"ErpCode": erp_code, "Few": stock})
        if not data.get("ErpCode"):
            raise SyncError(data.get("ErrorMessage") or data.get("Error") or "stock update not acknowledged")

    def create_invoice(self, order: Order) -> str:
        """Post a sales invoice for the order.

        Returns:
            str: The ERP code of the created invoice.

        Raises:
            SyncError: The ERP did not return an invoice code.
            httpx.HTTPError: Transport failure or error status.
        """
        data = self.request("post", "Invoice", invoice_payload(order, timezone.localtime()))
        if not data.get("ErpCode"):
            raise SyncError(data.get("Error") or "invoice not created")
        return str(data["ErpCode"])
