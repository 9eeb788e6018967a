"""Logging filters that enrich records with request context.

``RequestIdFilter`` copies the id published by ``RequestIdMiddleware`` onto
each record so the JSON formatter can emit ``request_id`` for lines written
by views, services and the ERP worker threads alike. Worker threads run
outside any request and log ``-`` unless the dispatcher copied the context.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records."""

    def filter(self, record: LogRecord) -> bool:
        """Populate ``record.request_id`` and let the record through.

        Records that already carry a ``request_id`` (passed through ``extra``)
        keep it.

        Args:
            record: The log record to enrich.

        Returns:
            bool: Always True.
        """
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
