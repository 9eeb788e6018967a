"""HTTP client for the inventory service.

``HttpInventoryClient`` implements ``InventoryPort`` against the inventory
service (``services/inventory``) and also exposes the catalog calls used by
the ERP sync. Every call goes through ``shop.http.call_with_retry``: it
carries ``X-Request-ID``, is guarded by the ``inventory`` circuit breaker and
is retried with exponential backoff on transport errors and 5xx.

Business outcomes are not failures: a 422 from ``/reserve`` becomes
``OutOfStock`` and a 404 on an ERP code becomes ``None``.
"""

from typing import Dict, List, Optional

from django.conf import settings

from shop.http import breaker_for, call_with_retry

from .domain import ProductSnapshot, StockLine
from .errors import OutOfStock


def _product(data: dict) -> ProductSnapshot:
    return ProductSnapshot(
        sku=data["sku"],
        name=data.get("name", ""),
        price=int(data.get("price", 0)),
        stock=int(data.get("stock", 0)),
        discount_price=int(data.get("discount_price") or 0),
        track_inventory=bool(data.get("track_inventory", True)),
        erp_code=data.get("erp_code"),
        erp_item_code=data.get("erp_item_code"),
    )


class HttpInventoryClient:
    """HTTP client for the inventory service with retry and circuit breaker."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = breaker_for("inventory")

    def _call(self, method: str, path: str, **kwargs):
        return call_with_retry(self.breaker, method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)

    def get_products(self, skus: List[str]) -> Dict[str, ProductSnapshot]:
        """Fetch products by SKU; unknown SKUs are simply absent."""
        if not skus:
            return {}
        resp = self._call("get", "/products", params={"sku": list(skus)})
        return {p["sku"]: _product(p) for p in resp.json().get("products", [])}

    def reserve(self, lines: List[StockLine]) -> None:
        """Decrement stock for all lines or none.

        Maps business responses:
        - 200 → reserved
        - 422 → ``OutOfStock`` with the short SKUs, not a circuit failure

        Raises:
            OutOfStock: The service refused the batch.
            httpx.RequestError: Transport failure after retries.
            httpx.HTTPStatusError: Non-retriable error status.
            RuntimeError: Circuit open.
        """
        payload = {"items": [{"sku": ln.sku, "quantity": ln.quantity} for ln in lines]}
        resp = self._call("post", "/reserve", json=payload, business_statuses=(422,))
        if resp.status_code == 422:
            detail = resp.json().get("detail") or {}
            skus = detail.get("skus", []) if isinstance(detail, dict) else []
            raise OutOfStock(skus or [ln.sku for ln in lines])
        if not resp.json().get("reserved", False):
            raise OutOfStock([ln.sku for ln in lines])

    def release(self, lines: List[StockLine]) -> None:
        payload = {"items": [{"sku": ln.sku, "quantity": ln.quantity} for ln in lines]}
        self._call("post", "/release", json=payload)

    # ---- catalog calls used by the ERP sync ----
    def upsert_category(self, erp_code: str, name: str, parent_code: Optional[str] = None, is_main: bool = False) -> bool:
        """Create or update a category by ERP code.

        Returns:
            bool: True when the category was created.
        """
        resp = self._call(
            "put",
            f"/categories/{erp_code}",
            json={"name": name, "parent_code": parent_code, "is_main": is_main},
        )
        return bool(resp.json().get("created", False))

    def category_exists(self, erp_code: str) -> bool:
        resp = self._call("get", f"/categories/{erp_code}", business_statuses=(404,))
        return resp.status_code == 200

    def upsert_erp_product(self, erp_code: str, fields: dict, update_all: bool = False) -> str:
        """Create or update a product mirrored from the ERP.

        Returns:
            str: ``created``, ``updated`` or ``skipped`` (stock and price unchanged).
        """
        resp = self._call("put", f"/erp/products/{erp_code}", json={**fields, "update_all": update_all})
        return resp.json().get("result", "skipped")

    def set_stock_by_erp_code(self, erp_code: str, stock: int) -> Optional[str]:
        """Overwrite stock for the product with ``erp_code``.

        Returns:
            The product SKU, or None when no product carries that ERP code.
        """
        resp = self._call("put", f"/erp/products/{erp_code}/stock", json={"stock": stock}, business_statuses=(404,))
        if resp.status_code == 404:
            return None
        return resp.json().get("sku")

    def health(self) -> bool:
        resp = self._call("get", "/health")
        return bool(resp.json().get("ok", False))
