# This file builds the FastAPI application for the shipping service and mounts its routers.
# Public checkout routes and admin order routes share one versioned prefix; health probes stay unversioned.
# Prometheus metrics are labelled by route template so per-order admin paths do not explode label cardinality.
# Request logging to the database is optional and never fails the request it describes.

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import RequestResponseEndpoint

from src.api.api_config import ApiConfig, get_api_config
from src.api.dependencies import get_database_client
from src.api.error_handlers import register_error_handlers
from src.api.routers.admin_orders import router as admin_orders_router
from src.api.routers.admin_reports import router as admin_reports_router
from src.api.routers.health import router as health_router
from src.api.routers.shipping import router as shipping_router
from src.common.logging import configure_logging

LOGGER = logging.getLogger("api.app")

SHIPPING_HTTP_REQUESTS_TOTAL = Counter(
    "shipping_http_requests_total",
    "HTTP requests handled by the shipping API.",
    ["method", "route", "status_code"],
)
SHIPPING_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "shipping_http_request_duration_seconds",
    "Shipping API request duration in seconds; carrier quotes dominate the upper buckets.",
    ["method", "route"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 15, 30),
)
SHIPPING_HTTP_INFLIGHT_REQUESTS = Gauge(
    "shipping_http_inflight_requests",
    "Shipping API requests currently in progress.",
    ["method"],
)

OPENAPI_TAGS = [
    {"name": "health", "description": "Liveness, readiness, and build metadata."},
    {"name": "shipping", "description": "Package weight and carrier rate quotes for checkout."},
    {"name": "admin-orders", "description": "Package selection, rate application, requotes, and quote resets."},
    {"name": "admin-reports", "description": "Shipping totals by carrier and service."},
]


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template if isinstance(template, str) else "unmatched"


def _resolve_database_client(app: FastAPI) -> Any:
    provider = app.dependency_overrides.get(get_database_client, get_database_client)
    return provider()


def _log_request(app: FastAPI, config: ApiConfig, request: Request, status_code: int, duration_ms: float) -> None:
    try:
        _resolve_database_client(app).log_request(
            table_name=config.request_log_table_name,
            request_id=request.state.request_id,
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            duration_ms=duration_ms,
        )
    except SQLAlchemyError as exc:
        LOGGER.warning("Request log write failed request_id=%s error=%s", request.state.request_id, exc)


def create_app() -> FastAPI:
    configure_logging()
    config = get_api_config()

    app = FastAPI(
        title=config.api_name,
        description=(
            "Storefront shipping quotes and admin shipping actions for dental-supply orders. "
            "Order metadata writes are guarded so a stored shipping price is never silently lost."
        ),
        version=config.app_version,
        openapi_tags=OPENAPI_TAGS,
    )

    if config.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
            expose_headers=["x-request-id", "x-response-time-ms"],
        )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        started = time.perf_counter()
        status_code = 500
        SHIPPING_HTTP_INFLIGHT_REQUESTS.labels(method=request.method).inc()
        try:
            response = await call_next(request)
            status_code = response.status_code
            duration_ms = (time.perf_counter() - started) * 1000.0
            response.headers["x-request-id"] = request.state.request_id
            response.headers["x-response-time-ms"] = f"{duration_ms:.2f}"
            if config.enable_request_logging:
                _log_request(app, config, request, status_code, duration_ms)
            return response
        finally:
            route = _route_label(request)
            SHIPPING_HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route, status_code=str(status_code)).inc()
            SHIPPING_HTTP_REQUEST_DURATION_SECONDS.labels(method=request.method, route=route).observe(
                time.perf_counter() - started
            )
            SHIPPING_HTTP_INFLIGHT_REQUESTS.labels(method=request.method).dec()

    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.on_event("startup")
    def check_orders_database() -> None:
        try:
            app.state.db_connected_at_startup = _resolve_database_client(app).can_connect()
        except SQLAlchemyError as exc:
            LOGGER.warning("Orders database check failed at startup: %s", exc)
            app.state.db_connected_at_startup = False
        if not app.state.db_connected_at_startup:
            LOGGER.warning("Orders database is unreachable; admin writes will fail until it recovers")

    register_error_handlers(app)

    app.include_router(health_router)
    for router in (shipping_router, admin_orders_router, admin_reports_router):
        app.include_router(router, prefix=config.api_version_path)

    return app


app = create_app()
