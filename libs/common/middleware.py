"""Request tracing for the billing API.

Every request gets an X-Request-ID (propagated from the caller when present)
and an X-Response-Time header. Start and finish are logged with the service
name so cron-triggered renewal runs can be told apart from user traffic.
"""
import time
from typing import Callable, Iterable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from libs.common.logging import (
    clear_request_context,
    configure_logging,
    get_logger,
    set_request_context,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
RESPONSE_TIME_HEADER = "X-Response-Time"


class RequestContextMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, service_name: str, quiet_paths: Iterable[str] = ()):
        super().__init__(app)
        self.service_name = service_name
        self.quiet_paths = frozenset(quiet_paths)

    def _fields(self, request: Request, **fields) -> dict:
        fields["service"] = self.service_name
        if request.headers.get("X-Cron-Secret") is not None:
            fields["trigger"] = "cron"
        return {"extra_fields": fields}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = set_request_context(
            request_id=request.headers.get(REQUEST_ID_HEADER),
            path=request.url.path,
            method=request.method,
        )
        quiet = request.url.path in self.quiet_paths
        started = time.perf_counter()

        if not quiet:
            logger.info(
                "Request started",
                extra=self._fields(request, query=str(request.url.query) or None),
            )

        try:
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            if not quiet:
                # 4xx is expected traffic here (declined checkouts, role checks)
                level = "warning" if response.status_code >= 500 else "info"
                getattr(logger, level)(
                    "Request completed",
                    extra=self._fields(
                        request,
                        status_code=response.status_code,
                        duration_ms=duration_ms,
                    ),
                )
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers[RESPONSE_TIME_HEADER] = f"{duration_ms}ms"
            return response
        except Exception as exc:
            logger.exception(
                "Request failed with unhandled exception",
                extra=self._fields(
                    request,
                    error=str(exc),
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                ),
            )
            raise
        finally:
            clear_request_context()


def add_observability_middleware(
    app: FastAPI,
    service_name: str,
    quiet_paths: Iterable[str] = ("/health",),
) -> None:
    """Configure logging and install request tracing on ``app``."""
    configure_logging()
    app.add_middleware(
        RequestContextMiddleware,
        service_name=service_name,
        quiet_paths=tuple(quiet_paths),
    )
    logger.info("Request tracing enabled for %s", service_name)
