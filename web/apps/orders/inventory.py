"""Inventory adjustment for orders.

``InventoryAdjuster`` sits between the order lifecycle and the stock store.
It aggregates lines per SKU so a batch touches each product once, and keeps
``Order.stock_committed`` in step with what the store actually holds so a
commit or a release is never applied twice for the same order.
"""

import logging
from collections import OrderedDict
from typing import Iterable, List

from .domain import InventoryPort, Order, StockLine
from .errors import ValidationError

logger = logging.getLogger(__name__)


def aggregate(lines: Iterable[StockLine]) -> List[StockLine]:
    """Merge lines for the same SKU, keeping first-seen order.

    Raises:
        ValidationError: If a line has a non-positive quantity.
    """
    totals: "OrderedDict[str, int]" = OrderedDict()
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError(f"invalid quantity for {line.sku}", code="INVALID_QUANTITY")
        totals[line.sku] = totals.get(line.sku, 0) + line.quantity
    return [StockLine(sku, qty) for sku, qty in totals.items()]


class InventoryAdjuster:
    """Applies and reverses stock deltas through an ``InventoryPort``."""

    def __init__(self, store: InventoryPort):
        self.store = store

    def reserve(self, lines: Iterable[StockLine]) -> None:
        """All-or-nothing decrement.

        Raises:
            OutOfStock: Nothing was decremented.
        """
        batch = aggregate(lines)
        if batch:
            self.store.reserve(batch)

    def release(self, lines: Iterable[StockLine]) -> None:
        batch = aggregate(lines)
        if batch:
            self.store.release(batch)

    def commit(self, order: Order) -> bool:
        """Take stock for ``order`` unless it already holds it.

        Returns:
            bool: True when stock was decremented by this call.
        """
        if order.stock_committed:
            return False
        self.reserve(order.stock_lines())
        order.stock_committed = True
        logger.info("stock committed", extra={"order_id": str(order.id), "lines": len(order.items)})
        return True

    def revert(self, order: Order) -> bool:
        """Give back the stock ``order`` holds, if any.

        Returns:
            bool: True when stock was released by this call.
        """
        if not order.stock_committed:
            return False
        self.release(order.stock_lines())
        order.stock_committed = False
        logger.info("stock released", extra={"order_id": str(order.id), "lines": len(order.items)})
        return True
