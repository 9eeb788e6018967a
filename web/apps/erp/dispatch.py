"""Dispatchers that run the ERP order sync once the order transaction commits.

Both implement ``ErpSyncScheduler``. ``ThreadedErpDispatcher`` hands the sync
to a small worker pool so the request returns without waiting for the ERP;
``InlineErpDispatcher`` runs it in the committing thread.
"""

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from django.db import connections, transaction

from .sync import ErpSyncService

logger = logging.getLogger(__name__)


class InlineErpDispatcher:
    def __init__(
        self,
        sync_factory: Callable[[], ErpSyncService],
        on_commit: Callable[[Callable[[], None]], None] = transaction.on_commit,
    ):
        self.sync_factory = sync_factory
        self.on_commit = on_commit

    def schedule_invoice_sync(self, order_id: uuid.UUID) -> None:
        self.on_commit(lambda: self._run(order_id))

    def _run(self, order_id: uuid.UUID) -> None:
        self.sync_factory().sync_order(order_id)


class ThreadedErpDispatcher(InlineErpDispatcher):
    """Runs order syncs on a ``ThreadPoolExecutor``.

    Args:
        sync_factory: Builds the sync service inside the worker.
        workers: Pool size.
        on_commit: After-commit hook.
    """

    def __init__(
        self,
        sync_factory: Callable[[], ErpSyncService],
        workers: int = 2,
        on_commit: Callable[[Callable[[], None]], None] = transaction.on_commit,
    ):
        super().__init__(sync_factory, on_commit)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="erp-sync")
        self.last_future: Optional[Future] = None

    def schedule_invoice_sync(self, order_id: uuid.UUID) -> None:
        self.on_commit(lambda: self._submit(order_id))

    def _submit(self, order_id: uuid.UUID) -> None:
        self.last_future = self._executor.submit(self._work, order_id)

    def _work(self, order_id: uuid.UUID) -> None:
        try:
            self._run(order_id)
        except Exception:
            # Nobody waits on the future; the sync result stays pending and is retried.
            logger.exception("erp sync worker crashed", extra={"order_id": str(order_id)})
        finally:
            connections.close_all()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
