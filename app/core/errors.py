"""Proxy error taxonomy and its JSON rendering.

Admission and upstream errors are raised before anything has been sent to the
caller and are rendered as ``{"error": <code>, "message": <text>, ...}``.
Errors discovered after the response went out (usage extraction, recording)
never reach this module; they are logged and counted in diagnostics.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ProxyError(Exception):
    """Base class for errors surfaced to proxy callers."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_body(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message, **self.context}


class InvalidCredential(ProxyError):
    status_code = 401
    error_code = "invalid_api_key"

    def __init__(self) -> None:
        super().__init__("Unknown or revoked API key")


class TenantDeactivated(ProxyError):
    status_code = 403
    error_code = "tenant_deactivated"

    def __init__(self, tenant_slug: str) -> None:
        super().__init__(
            "Tenant is deactivated; contact an administrator instead of retrying",
            tenant=tenant_slug,
        )


class ModelNotPriced(ProxyError):
    status_code = 422
    error_code = "model_not_priced"

    def __init__(self, model: str) -> None:
        super().__init__(f"No pricing is known for model '{model}'", model=model)


class BudgetExceeded(ProxyError):
    status_code = 429
    error_code = "budget_exceeded"

    def __init__(self, period: str, scope: str, limit: float, used: float) -> None:
        super().__init__(
            f"{period.capitalize()} {scope} budget exceeded",
            period=period,
            scope=scope,
            limit=limit,
            used=round(used, 6),
        )
        self.period = period
        self.scope = scope
        self.limit = limit
        self.used = used


class UpstreamUnreachable(ProxyError):
    status_code = 502
    error_code = "upstream_unreachable"

    def __init__(self, detail: str) -> None:
        super().__init__("Upstream provider could not be reached", detail=detail)


class UpstreamNotConfigured(ProxyError):
    status_code = 502
    error_code = "upstream_not_configured"

    def __init__(self) -> None:
        super().__init__("No upstream endpoint is configured for this tenant")


class PricingUnavailable(RuntimeError):
    """Raised at startup when no price catalog could be loaded at all."""


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s -> %s: %s", request.method, request.url.path,
                           exc.error_code, exc.context)
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())
