"""
Lease & Ledger API Application Factory
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .contracts import router as contracts_router
from .charges import router as charges_router
from .payments import router as payments_router
from .collections import router as collections_router
from .reports import router as reports_router
from .admin import router as admin_router
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lease & Ledger Engine API",
        description="Lease contracts, charges, payment allocation, aging and collections",
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

    app.include_router(contracts_router, prefix="/contracts", tags=["Contracts"])
    app.include_router(charges_router, prefix="/charges", tags=["Charges"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(collections_router, prefix="/collections", tags=["Collections"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lease_ledger_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Lease & Ledger Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "contracts": "/contracts",
                "charges": "/charges",
                "payments": "/payments",
                "collections": "/collections",
                "reports": "/reports",
                "admin": "/admin",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "lease_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
