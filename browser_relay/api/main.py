"""FastAPI application for the browser relay.

This module configures the FastAPI application with request logging,
error handling that always answers with a RelayResponse envelope, the
discovery identity endpoint and the relay lifecycle.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import RelayConfig, load_config
from ..discovery import IDENTITY_PATH
from ..errors import RelayError
from ..models import RelayResponse, ServerIdentity
from ..relay import Relay
from .responses import HealthResponse, envelope_response
from .routes import router

logger = logging.getLogger(__name__)

APP_TITLE = "Browser Relay"
APP_DESCRIPTION = """
Browser Relay bridges a DevTools capture agent and tool-invoking clients.

* **Discovery**: `GET /.identity` identifies a running relay
* **Capture**: console and network logs, screenshots, storage and DOM state
* **Interaction**: click, fill, select, submit and refresh in the inspected tab
* **Audits**: Lighthouse audits on a pooled headless Chromium

Every response is a `{success, error, data, warnings}` envelope whose data
has been redacted and truncated.
"""


def create_app(config: Optional[RelayConfig] = None, relay: Optional[Relay] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Relay configuration; loaded from YAML when omitted
        relay: Pre-built relay, mainly for tests

    Returns:
        Configured FastAPI application instance
    """
    if relay is None:
        relay = Relay(config or load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        try:
            yield
        finally:
            await relay.stop()

    app = FastAPI(
        title=APP_TITLE,
        description=APP_DESCRIPTION,
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan
    )
    app.state.relay = relay
    app.state.started_at = datetime.utcnow()

    # The relay only listens on loopback; the agent and tools run locally
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def add_request_id_and_logging(request: Request, call_next):
        """Add request ID and logging middleware."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()
        logger.debug(
            f"Request started: {request.method} {request.url.path}",
            extra={"request_id": request_id, "method": request.method, "path": request.url.path}
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Request failed: {request.method} {request.url.path} - {str(e)}",
                extra={"request_id": request_id, "duration_ms": round(duration * 1000, 2)},
                exc_info=True
            )
            raise

        response.headers["X-Request-ID"] = request_id
        duration = time.time() - start_time
        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "request_id": request_id,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
            }
        )
        return response

    @app.exception_handler(RelayError)
    async def relay_exception_handler(request: Request, exc: RelayError):
        """Convert relay errors raised outside a capability into envelopes."""
        return envelope_response(RelayResponse.fail(exc.kind, exc.message, exc.details))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors with detailed information."""
        errors = []
        for error in exc.errors():
            field_path = " -> ".join(str(loc) for loc in error["loc"][1:])
            errors.append({
                "field": field_path,
                "message": error["msg"],
                "type": error["type"],
            })

        return envelope_response(RelayResponse.fail(
            "validation_error",
            "Request validation failed",
            {"validation_errors": errors}
        ))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions with the envelope format."""
        return envelope_response(RelayResponse.fail(f"http_{exc.status_code}", str(exc.detail)))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"Unhandled exception in request {request_id}: {str(exc)}", exc_info=True)
        return envelope_response(RelayResponse.fail("internal_error", "An unexpected error occurred"))

    @app.get(
        IDENTITY_PATH,
        response_model=ServerIdentity,
        tags=["System"],
        summary="Relay identity",
        description="Identity document probed by discovery"
    )
    async def identity(request: Request) -> ServerIdentity:
        return request.app.state.relay.identity()

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check"
    )
    async def health_check(request: Request) -> HealthResponse:
        """Health check endpoint for monitoring and operational purposes."""
        relay: Relay = request.app.state.relay
        uptime = (datetime.utcnow() - request.app.state.started_at).total_seconds()

        pool_stats = relay.pool.stats()
        services = {
            "agent": "connected" if relay.connection.is_connected else "disconnected",
            "audit_browser": "running" if pool_stats["live_processes"] else "idle",
        }
        overall_status = "healthy" if relay.connection.is_connected else "degraded"

        return HealthResponse(
            status=overall_status,
            version=__version__,
            timestamp=datetime.utcnow(),
            services=services,
            uptime_seconds=uptime
        )

    app.include_router(router)

    return app
