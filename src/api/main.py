import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routers import reconciliation
from src.shadow_it_sync.db.operations import DatabaseOperations
from src.shadow_it_sync.sync.engine import ReconciliationService
from src.utils.logging import logger


def create_app(service: Optional[ReconciliationService] = None) -> FastAPI:
    """Build the API; tests pass a service wired to an in-memory database."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Initializing Shadow IT Sync API")
        await app.state.reconciliation_service.db.init_db()
        yield
        logger.info("Shutting down Shadow IT Sync API")
        await app.state.reconciliation_service.db.close()

    app = FastAPI(
        title="Shadow IT Sync",
        description="Directory reconciliation, application deduplication and risk scoring",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.reconciliation_service = service or ReconciliationService(DatabaseOperations())

    default_origins = "https://localhost:*,https://127.0.0.1:*"
    allowed_origins = os.environ.get("ALLOWED_ORIGINS", default_origins).split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_origin_regex=r"https://(localhost|127\.0\.0\.1)(:[0-9]+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(reconciliation.router, prefix="/api")

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "Shadow IT Sync API"
        }

    return app
