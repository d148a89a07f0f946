"""
Lendbook API Application Factory
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .errors import register_error_handlers
from .calculator import router as calculator_router
from .customers import router as customers_router
from .lender import router as lender_router
from .loans import router as loans_router
from .payments import router as payments_router
from .invoices import router as invoices_router
from .. import __version__
from ..system import LendingSystem
from ..config import get_config
from ..logging_config import setup_logging


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or LendingSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if system.config.invoice_scheduler_enabled:
            system.invoice_scheduler.start()
        yield
        system.invoice_scheduler.stop()

    app = FastAPI(
        title="Lendbook API",
        description="Back office for loan origination, EMI collection and invoicing",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system
    register_error_handlers(app)

    # Include routers
    app.include_router(calculator_router, prefix="/calculator", tags=["Calculator"])
    app.include_router(customers_router, prefix="/customers", tags=["Customers"])
    app.include_router(lender_router, prefix="/lender", tags=["Lender"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(invoices_router, prefix="/invoices", tags=["Invoices"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lendbook_api",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scheduler_running": system.invoice_scheduler.is_running()
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    uvicorn.run(
        "lendbook.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
