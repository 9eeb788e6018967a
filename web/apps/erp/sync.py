"""ERP mirroring: order invoices, stock pushes and the periodic catalog sync.

The ERP is a best-effort mirror. Nothing here raises into the caller: every
failure is logged and recorded on the order (``erp_sync_*`` fields) or on the
product sync record, and the order status is never touched. Failed invoice
syncs stay listed by ``pending_orders`` until they succeed or run out of
attempts.
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Callable, List, Optional

import httpx
from django.utils import timezone

from apps.orders.domain import Order, OrderStore, SyncStatus
from apps.orders.errors import SyncError

from .holoo import HolooClient

logger = logging.getLogger(__name__)

# Failures the sync absorbs: ERP refusals, transport errors, open circuits.
SYNC_FAILURES = (SyncError, httpx.HTTPError, RuntimeError)


class ErpSyncService:
    """Mirrors orders and stock changes into the ERP.

    Args:
        client: Holoo client.
        orders: Order store; sync results are written with ``record_sync``.
        catalog: Stock store, read for the stock to push.
        product_states: Store for per-product push results.
        max_attempts: Attempts after which an order is no longer pending.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        *,
        client: HolooClient,
        orders: OrderStore,
        catalog,
        product_states,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = timezone.now,
    ):
        self.client = client
        self.orders = orders
        self.catalog = catalog
        self.product_states = product_states
        self.max_attempts = max_attempts
        self.clock = clock

    def sync_invoice(self, order_id: uuid.UUID) -> Optional[str]:
        """Create the ERP sales invoice for an order.

        Already mirrored orders are not sent twice. With the integration
        disabled nothing is recorded, so the order is synced once it is
        enabled.

        Returns:
            The ERP invoice code, or None when the sync did not happen.
        """
        order = self.orders.get(order_id)
        if order is None:
            logger.warning("erp sync skipped, unknown order", extra={"order_id": str(order_id)})
            return None
        if order.erp.status == SyncStatus.SUCCESS:
            return order.erp.invoice_id
        if not self.client.enabled:
            logger.info("erp disabled, invoice sync skipped", extra={"order_id": str(order.id)})
            return None

        state = order.erp
        state.attempts += 1
        state.synced_at = self.clock()
        try:
            invoice_id = self.client.create_invoice(order)
        except SYNC_FAILURES as e:
            state.status = SyncStatus.FAILED
            state.error = str(e)
            self.orders.record_sync(order.id, state)
            logger.warning(
                "erp invoice sync failed",
                extra={"order_id": str(order.id), "attempts": state.attempts, "error": str(e)},
            )
            return None

        state.status = SyncStatus.SUCCESS
        state.error = ""
        state.invoice_id = invoice_id
        self.orders.record_sync(order.id, state)
        logger.info("erp invoice created", extra={"order_id": str(order.id), "erp_invoice_id": invoice_id})
        return invoice_id

    def update_remote_inventory(self, sku: str, delta: int = 0) -> bool:
        """Push the current stock of ``sku`` to the ERP.

        The stock store is the source of truth, so the pushed value is the
        product's stock after the local change of ``delta`` units.

        Returns:
            bool: True when the ERP acknowledged the new stock. Products the
            ERP does not know are skipped and return False.
        """
        try:
            product = self.catalog.get_products([sku]).get(sku)
        except SYNC_FAILURES as e:
            logger.warning("erp stock push skipped, product lookup failed", extra={"sku": sku, "error": str(e)})
            return False
        if product is None or not product.erp_code:
            return False

        try:
            self.client.update_inventory(product.erp_code, product.stock)
        except SYNC_FAILURES as e:
            self.product_states.record(sku, product.erp_code, False, product.stock, self.clock(), str(e))
            logger.warning(
                "erp stock push failed",
                extra={"sku": sku, "erp_code": product.erp_code, "delta": delta, "error": str(e)},
            )
            return False
        self.product_states.record(sku, product.erp_code, True, product.stock, self.clock())
        logger.info("erp stock pushed", extra={"sku": sku, "stock": product.stock, "delta": delta})
        return True

    def sync_order(self, order_id: uuid.UUID) -> Optional[str]:
        """Mirror an order: its invoice, then the stock of every ERP product it holds."""
        invoice_id = self.sync_invoice(order_id)
        order = self.orders.get(order_id)
        if order is not None and self.client.enabled:
            for item in order.items:
                if item.erp_code:
                    self.update_remote_inventory(item.sku, -item.quantity)
        return invoice_id

    def pending_orders(self, limit: int = 20) -> List[Order]:
        return self.orders.pending_sync(limit, self.max_attempts)


class CatalogSync:
    """Pulls the ERP catalog into the stock store.

    Args:
        client: Holoo client.
        catalog: Stock store exposing the category and ERP product upserts.
        page_size: Products fetched per page.
    """

    def __init__(self, *, client: HolooClient, catalog, page_size: int = 100):
        self.client = client
        self.catalog = catalog
        self.page_size = page_size

    def sync_categories(self) -> dict:
        """Upsert main groups, then side groups whose parent exists."""
        main_groups = self.client.get_main_groups()
        side_groups = self.client.get_side_groups()

        for group in main_groups:
            self.catalog.upsert_category(str(group["ErpCode"]), group.get("Name", ""), None, True)

        side = orphans = 0
        for group in side_groups:
            parent = str(group.get("MainErpCode") or "")
            if not parent or not self.catalog.category_exists(parent):
                orphans += 1
                continue
            self.catalog.upsert_category(str(group["ErpCode"]), group.get("Name", ""), parent, False)
            side += 1

        result = {"main": len(main_groups), "side": side, "orphans": orphans}
        logger.info("erp categories synced", extra={"categories": result})
        return result

    @staticmethod
    def product_fields(data: dict) -> dict:
        return {
            "name": data.get("Name", ""),
            "price": int(data.get("SellPrice") or 0),
            "compare_price": int(data.get("SellPrice2") or 0),
            "stock": int(data.get("Few") or 0),
            "erp_item_code": str(data["Code"]) if data.get("Code") is not None else None,
            "category_code": data.get("SideGroupErpCode") or data.get("MainGroupErpCode"),
            "unit": data.get("unitTitle") or "",
        }

    def sync_products(self, update_all: bool = False) -> dict:
        """Upsert every ERP product page by page.

        Unchanged products (same stock and price) are skipped unless
        ``update_all``. A product that fails is counted and the sync goes on.
        """
        counts = {"total": 0, "created": 0, "updated": 0, "skipped": 0, "failed": 0}
        page = 1
        while True:
            products = self.client.get_products(page, self.page_size)
            for data in products:
                counts["total"] += 1
                erp_code = str(data.get("ErpCode") or "")
                if not erp_code:
                    counts["skipped"] += 1
                    continue
                try:
                    result = self.catalog.upsert_erp_product(erp_code, self.product_fields(data), update_all)
                except SYNC_FAILURES as e:
                    counts["failed"] += 1
                    logger.warning("erp product sync failed", extra={"erp_code": erp_code, "error": str(e)})
                    continue
                counts[result if result in counts else "skipped"] += 1
            if len(products) < self.page_size:
                break
            page += 1
        logger.info("erp products synced", extra={"products": counts})
        return counts

    def run(self, update_all: bool = True) -> dict:
        return {"categories": self.sync_categories(), "products": self.sync_products(update_all)}


class PeriodicSync:
    """Runs the catalog sync every ``interval`` seconds on a background thread.

    ``stop()`` ends the loop but does not interrupt a sync in flight.
    """

    def __init__(self, catalog_sync: CatalogSync, interval: float, enabled: bool = True):
        self.catalog_sync = catalog_sync
        self.interval = interval
        self.enabled = enabled
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, update_all: bool = True) -> Optional[dict]:
        try:
            result = self.catalog_sync.run(update_all=update_all)
        except SYNC_FAILURES as e:
            logger.error("scheduled erp sync failed", extra={"error": str(e)})
            return None
        logger.info("scheduled erp sync completed")
        return result

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self) -> bool:
        """Start the loop; does nothing when the integration is disabled."""
        if not self.enabled:
            logger.info("erp disabled, periodic sync not started")
            return False
        if self._thread and self._thread.is_alive():
            return True
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="erp-periodic-sync", daemon=True)
        self._thread.start()
        logger.info("erp periodic sync started", extra={"interval_secs": self.interval})
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("erp periodic sync stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until ``stop()`` is called or ``timeout`` passes; True once stopped."""
        return self._stop.wait(timeout)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())
