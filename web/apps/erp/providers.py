"""Factories for the ERP catalog sync and its periodic job."""

from django.conf import settings

from apps.orders.providers import get_erp_sync_service, holoo_client, inventory_port

from .sync import CatalogSync, PeriodicSync

__all__ = ["get_catalog_sync", "get_erp_sync_service", "get_periodic_sync"]


def get_catalog_sync() -> CatalogSync:
    return CatalogSync(client=holoo_client(), catalog=inventory_port())


def get_periodic_sync() -> PeriodicSync:
    return PeriodicSync(
        get_catalog_sync(),
        interval=settings.HOLOO_SYNC_INTERVAL_SECS,
        enabled=holoo_client().enabled,
    )
