"""FastAPI application for the Billing Service."""

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from libs.common.error_handler import add_exception_handlers
from libs.common.logging import get_logger
from libs.common.middleware import add_observability_middleware
from services.billing_service.paychangu_client import GatewayNotConfigured
from services.billing_service.routers import (
    admin_router,
    payments_router,
    renewals_router,
    subscriptions_router,
    withdrawals_router,
)

logger = get_logger(__name__)


async def gateway_not_configured_handler(request: Request, exc: GatewayNotConfigured):
    logger.error("Payment gateway is not configured: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Missing required environment variables"},
    )


def create_app() -> FastAPI:
    """Create and configure the Billing Service FastAPI app."""
    app = FastAPI(
        title="Coaching Hub Billing Service",
        version="0.1.0",
        description="Coach subscriptions, client checkouts, renewals and withdrawals.",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
        max_age=86400,
    )

    add_observability_middleware(app, service_name="billing")
    add_exception_handlers(app)
    app.add_exception_handler(GatewayNotConfigured, gateway_not_configured_handler)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "billing"}

    app.include_router(payments_router)
    app.include_router(renewals_router)
    app.include_router(subscriptions_router)
    app.include_router(withdrawals_router)
    app.include_router(admin_router)

    return app


app = create_app()
