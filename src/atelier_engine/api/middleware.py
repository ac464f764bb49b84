"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles browser-based MCP clients (if any)
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from atelier_engine.domain.exceptions import (
    AtelierError,
    ConcurrentStateChangeError,
    DuplicateOperationError,
    FulfillmentAttemptsExhaustedError,
    InvalidStateTransitionError,
    NotOrderPartyError,
    OrderNotFoundError,
    ProviderError,
    QuotaExhaustedError,
    ServiceNotFoundError,
    SettlementNotFoundError,
    TransactionAlreadyUsedError,
    WorkspaceExpiredError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

# Most specific first; anything else derived from AtelierError is a 400.
STATUS_BY_ERROR: tuple[tuple[type[AtelierError], int], ...] = (
    (OrderNotFoundError, 404),
    (ServiceNotFoundError, 404),
    (SettlementNotFoundError, 404),
    (NotOrderPartyError, 403),
    (TransactionAlreadyUsedError, 409),
    (InvalidStateTransitionError, 409),
    (ConcurrentStateChangeError, 409),
    (DuplicateOperationError, 409),
    (QuotaExhaustedError, 409),
    (WorkspaceExpiredError, 409),
    (FulfillmentAttemptsExhaustedError, 409),
    (ProviderError, 502),
)


def status_for(exc: AtelierError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def error_response(exc: AtelierError) -> JSONResponse:
    content = {"error": exc.code, "message": exc.message}
    if exc.retryable:
        content["retryable"] = True
    return JSONResponse(status_code=status_for(exc), content=content)


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind to structlog context for all log entries in this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except InvalidStateTransitionError as exc:
            logger.warning(
                "state_machine.invalid_transition",
                current=exc.current_state,
                attempted=exc.attempted_state,
            )
            return error_response(exc)
        except ConcurrentStateChangeError as exc:
            logger.warning("order.concurrent_change", error=exc.message)
            return error_response(exc)
        except ProviderError as exc:
            logger.error("provider.error", error=exc.message, provider=exc.provider)
            return error_response(exc)
        except AtelierError as exc:
            logger.warning("domain.error", error=exc.message, code=exc.code)
            return error_response(exc)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
