"""
Fleet Billing API Application Factory
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .financings import router as financings_router, quotas_router
from .billing import router as billing_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Fleet Billing Ledger API",
        description="Installment financing schedules, quota billing and late fees",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(financings_router, prefix="/financings", tags=["Financings"])
    app.include_router(quotas_router, prefix="/quotas", tags=["Quotas"])
    app.include_router(billing_router, prefix="/billing", tags=["Billing"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "fleet_billing_api",
            "version": __version__
        }

    return app


app = create_app()
