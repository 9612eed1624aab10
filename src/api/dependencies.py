# This file provides dependency factories for FastAPI routes and middleware.
# It exists so the database client, order store, carrier client, and services are created once.
# The setup keeps routers thin and makes endpoint tests easy to override.
# Centralized construction also ensures one consistent API and shipping configuration is used.

from __future__ import annotations

import logging
from functools import lru_cache

from src.api.api_config import ApiConfig, get_api_config
from src.api.services.order_shipping_service import OrderShippingService
from src.api.services.shipping_quote_service import ShippingQuoteService
from src.api.services.shipping_report_service import ShippingReportService
from src.common.db import DatabaseClient
from src.shipping.metadata_guard import MetadataGuard
from src.shipping.order_store import OrderStore
from src.shipping.shipping_config import ShippingConfig, load_shipping_config
from src.skydropx.client import SkydropxClient, SkydropxConfigError, load_skydropx_config

LOGGER = logging.getLogger("api.dependencies")


@lru_cache(maxsize=1)
def get_database_client() -> DatabaseClient:
    config = get_api_config()
    return DatabaseClient(database_url=config.database_url)


@lru_cache(maxsize=1)
def get_shipping_config() -> ShippingConfig:
    return load_shipping_config()


@lru_cache(maxsize=1)
def get_order_store() -> OrderStore:
    config = get_api_config()
    return OrderStore(
        db=get_database_client(),
        table_name=config.validate_table_name(config.orders_table_name),
    )


@lru_cache(maxsize=1)
def get_metadata_guard() -> MetadataGuard:
    config = get_api_config()
    return MetadataGuard(
        store=get_order_store(),
        max_attempts=get_shipping_config().max_write_attempts,
        sha=config.git_sha,
    )


@lru_cache(maxsize=1)
def get_skydropx_client() -> SkydropxClient | None:
    try:
        carrier_config = load_skydropx_config()
    except SkydropxConfigError as exc:
        LOGGER.warning("Carrier quotes disabled: %s", exc)
        return None
    return SkydropxClient(config=carrier_config)


@lru_cache(maxsize=1)
def get_quote_service() -> ShippingQuoteService:
    return ShippingQuoteService(
        shipping_config=get_shipping_config(),
        carrier=get_skydropx_client(),
    )


@lru_cache(maxsize=1)
def get_order_shipping_service() -> OrderShippingService:
    return OrderShippingService(
        guard=get_metadata_guard(),
        shipping_config=get_shipping_config(),
        carrier=get_skydropx_client(),
    )


@lru_cache(maxsize=1)
def get_report_service() -> ShippingReportService:
    return ShippingReportService(store=get_order_store())


def get_config() -> ApiConfig:
    return get_api_config()
