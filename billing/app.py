"""FastAPI application factory: entry point for the billing API."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing.config import get_settings
from billing.errors import BillingError
from billing.routers import analytics, coupons, notifications, payments, plans, subscriptions, webhooks
from billing.utils import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    from billing.db.session import create_schema, engine

    settings = get_settings()
    setup_logging(verbose=settings.debug)
    await create_schema()

    if settings.resend_api_key:
        import resend
        resend.api_key = settings.resend_api_key

    if not settings.stripe_enabled:
        logger.info("Stripe not configured; checkout activates subscriptions locally")

    yield

    await engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    # --- Error handlers ---
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        content = {"detail": exc.message, "code": exc.code}
        reason = getattr(exc, "reason", None)
        if reason:
            content["reason"] = reason
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.get("/api/health", tags=["health"])
    async def health():
        return {"status": "ok", "stripe_enabled": settings.stripe_enabled}

    # --- Routers ---
    app.include_router(plans.router)
    app.include_router(coupons.router)
    app.include_router(payments.router)
    app.include_router(subscriptions.router)
    app.include_router(notifications.router)
    app.include_router(analytics.router)
    app.include_router(webhooks.router)

    return app


app = create_app()
