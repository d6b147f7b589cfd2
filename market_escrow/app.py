from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, Depends, FastAPI

from market_escrow.config import engine, settings
from market_escrow.errors import install_error_handlers
from market_escrow.middleware import IdempotencyMiddleware, RequestIdMiddleware
from market_escrow.models import Base
from market_escrow.providers.base import FundsMovementProvider
from market_escrow.routes import accounts, admin, disputes, escrows, listings, notifications, webhooks
from market_escrow.schemas import HealthResponse
from market_escrow.services import get_provider
from market_escrow.tasks import SweepWorker


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    worker = SweepWorker()
    app.state.sweeps = worker
    if settings.sweeps_enabled:
        worker.start()
    try:
        yield
    finally:
        await worker.stop()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Marketplace Escrow Service",
        version="0.1.0",
        description=(
            "Escrow for peer-to-peer marketplace purchases: custody, multi-signature funding, "
            "time-locked release and dispute resolution."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "Health", "description": "Service health check"},
            {"name": "Accounts", "description": "Registration, API keys and ledger wallets"},
            {"name": "Listings", "description": "Items offered for sale"},
            {"name": "Escrows", "description": "Escrow creation, funding, signatures, release and refund"},
            {"name": "Disputes", "description": "Opening, reviewing and resolving disputes"},
            {"name": "Notifications", "description": "Per-user escrow and dispute notifications"},
            {"name": "Webhooks", "description": "Webhook registration and management"},
            {"name": "Admin", "description": "Manually triggered background sweeps"},
        ],
    )

    install_error_handlers(app)
    app.add_middleware(IdempotencyMiddleware)
    app.add_middleware(RequestIdMiddleware)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health(provider: FundsMovementProvider = Depends(get_provider)) -> HealthResponse:
        return HealthResponse(provider=provider.name)

    api_router = APIRouter()
    api_router.include_router(accounts.router)
    api_router.include_router(listings.router)
    api_router.include_router(escrows.router)
    api_router.include_router(disputes.router)
    api_router.include_router(notifications.router)
    api_router.include_router(webhooks.router)
    api_router.include_router(admin.router)

    app.include_router(api_router, prefix="/v1")
    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "market_escrow.app:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
