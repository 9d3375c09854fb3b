from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from policytracker.apps.api.errors import (
    database_exception_handler,
    http_exception_handler,
    payment_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    unknown_plan_exception_handler,
    validation_exception_handler,
)
from policytracker.apps.api.response import API_VERSION, is_versioned_request
from policytracker.apps.api.routes.clients import router as clients_router
from policytracker.apps.api.routes.cron import router as cron_router
from policytracker.apps.api.routes.dashboard import router as dashboard_router
from policytracker.apps.api.routes.documents import router as documents_router
from policytracker.apps.api.routes.health import router as health_router
from policytracker.apps.api.routes.payments import router as payments_router
from policytracker.apps.api.routes.policies import router as policies_router
from policytracker.apps.api.routes.subscription import router as subscription_router
from policytracker.apps.api.routes.usage import router as usage_router
from policytracker.core.config import get_settings
from policytracker.core.errors import DatabaseError, PaymentConfigError, PaymentGatewayError, UnknownPlanError
from policytracker.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)
_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/health/ready",
    "/v1/cron/expiry-notifications",
    "/v1/cron/monthly-report",
}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="PolicyTracker API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        # Wrap versioned JSON responses that routes returned bare.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None:
                    is_enveloped = (
                        isinstance(payload, dict)
                        and "data" in payload
                        and "meta" in payload
                        and isinstance(payload.get("meta"), dict)
                        and payload["meta"].get("api_version") == API_VERSION
                    )
                    if not is_enveloped:
                        wrapped_response = JSONResponse(
                            content={
                                "data": payload,
                                "meta": {"request_id": request_id, "api_version": API_VERSION},
                            },
                            status_code=response.status_code,
                        )
                        for key, value in response.headers.items():
                            if key.lower() in {"content-length", "content-type"}:
                                continue
                            wrapped_response.headers[key] = value
                        response = wrapped_response

        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(UnknownPlanError)
    async def _unknown_plan_exception_handler(request: Request, exc: UnknownPlanError):
        return await unknown_plan_exception_handler(request, exc)

    @app.exception_handler(PaymentGatewayError)
    async def _payment_gateway_exception_handler(request: Request, exc: PaymentGatewayError):
        return await payment_exception_handler(request, exc)

    @app.exception_handler(PaymentConfigError)
    async def _payment_config_exception_handler(request: Request, exc: PaymentConfigError):
        return await payment_exception_handler(request, exc)

    @app.exception_handler(DatabaseError)
    async def _database_exception_handler(request: Request, exc: DatabaseError):
        return await database_exception_handler(request, exc)

    # Every route is served under the versioned prefix only.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    app.include_router(subscription_router, prefix=f"/{API_VERSION}")
    app.include_router(documents_router, prefix=f"/{API_VERSION}")
    app.include_router(payments_router, prefix=f"/{API_VERSION}")
    app.include_router(dashboard_router, prefix=f"/{API_VERSION}")
    app.include_router(policies_router, prefix=f"/{API_VERSION}")
    app.include_router(clients_router, prefix=f"/{API_VERSION}")
    app.include_router(cron_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title=f"{settings.app_name} API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth into the schema for every authenticated path.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="PolicyTracker API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
