import uuid

from apps.erp.dispatch import InlineErpDispatcher, ThreadedErpDispatcher


class FakeSync:
    def __init__(self, fail=False):
        self.fail = fail
        self.synced = []

    def sync_order(self, order_id):
        if self.fail:
            raise ValueError("unexpected")
        self.synced.append(order_id)


def test_inline_runs_after_commit():
    pending = []
    sync = FakeSync()
    dispatcher = InlineErpDispatcher(lambda: sync, on_commit=pending.append)
    oid = uuid.uuid4()

    dispatcher.schedule_invoice_sync(oid)
    assert sync.synced == []

    for callback in pending:
        callback()
    assert sync.synced == [oid]


def test_threaded_runs_on_worker(monkeypatch):
    closed = []
    monkeypatch.setattr("apps.erp.dispatch.connections.close_all", lambda: closed.append(True))
    sync = FakeSync()
    dispatcher = ThreadedErpDispatcher(lambda: sync, workers=1, on_commit=lambda fn: fn())
    oid = uuid.uuid4()

    dispatcher.schedule_invoice_sync(oid)
    dispatcher.last_future.result(timeout=5)
    dispatcher.shutdown()

    assert sync.synced == [oid]
    assert closed == [True]


def test_worker_crash_is_logged_not_raised(monkeypatch, caplog):
    monkeypatch.setattr("apps.erp.dispatch.connections.close_all", lambda: None)
    dispatcher = ThreadedErpDispatcher(lambda: FakeSync(fail=True), workers=1, on_commit=lambda fn: fn())

    dispatcher.schedule_invoice_sync(uuid.uuid4())
    assert dispatcher.last_future.result(timeout=5) is None
    dispatcher.shutdown()

    assert "erp sync worker crashed" in caplog.text
