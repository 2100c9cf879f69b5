"""FastAPI application wiring for the directory service."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import directory_error_handler, router as v1_router
from .config import get_settings
from .domain.errors import DirectoryError
from .domain.service import DirectoryService
from .notifications import LoggingInviteNotifier
from .repository import (
    AccountRepository,
    AuditLogRepository,
    InvitationRepository,
    PolicyRepository,
    create_schema,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the Postgres pool and build the single DirectoryService for the process."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    create_schema(pool)
    accounts = AccountRepository(pool)
    app.state.pool = pool
    app.state.account_directory = accounts
    app.state.directory_service = DirectoryService(
        accounts,
        PolicyRepository(pool),
        InvitationRepository(pool),
        LoggingInviteNotifier(),
        AuditLogRepository(pool),
        settings=settings,
    )
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)
app.add_exception_handler(DirectoryError, directory_error_handler)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)


def serve() -> None:
    """Run the service under uvicorn using the configured host and port."""
    import uvicorn

    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
