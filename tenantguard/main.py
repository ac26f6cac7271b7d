"""tenantguard FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenantguard import __version__
from tenantguard.api.middleware import RequestLoggingMiddleware
from tenantguard.api.routes import audit, health, principals, tenants
from tenantguard.audit.context import RequestContextMiddleware
from tenantguard.audit.log import AuditLog
from tenantguard.config.settings import Settings, settings as default_settings
from tenantguard.exceptions import (
    AuthenticationMissing,
    AuthorizationError,
    DuplicatePrincipalError,
    InvalidTransitionError,
    NotFoundError,
    StorageFailure,
)
from tenantguard.multitenancy.lifecycle import CredentialRegistrar, TenantLifecycleManager
from tenantguard.multitenancy.quotas import QuotaExceededError
from tenantguard.security.authorization import AuthorizationEngine
from tenantguard.storage.base import Storage

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _database_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    from sqlalchemy import text

    from tenantguard.db import engine

    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    yield
    await engine.dispose()


def create_app(
    storage: Optional[Storage] = None,
    registrar: Optional[CredentialRegistrar] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the application.

    Args:
        storage: Store to use. Defaults to the SQLAlchemy store on the
            configured database, whose connectivity is checked at startup.
        registrar: Optional external credential store for new principals.
        settings: Configuration; defaults to the environment.
    """
    settings = settings or default_settings
    lifespan = None
    if storage is None:
        from tenantguard.db import async_session
        from tenantguard.storage.sql import SQLAlchemyStorage

        storage = SQLAlchemyStorage(async_session)
        lifespan = _database_lifespan

    app = FastAPI(
        title="tenantguard",
        version=__version__,
        lifespan=lifespan,
    )

    audit_log = AuditLog(storage, settings=settings)
    engine = AuthorizationEngine(audit_log)
    app.state.storage = storage
    app.state.audit_log = audit_log
    app.state.engine = engine
    app.state.lifecycle = TenantLifecycleManager(
        storage,
        engine,
        audit_log,
        registrar=registrar,
        quotas=settings.PLAN_QUOTAS,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Outermost, so every inner layer sees the request context.
    app.add_middleware(RequestContextMiddleware)

    for module in (health, tenants, principals, audit):
        app.include_router(module.router)

    _register_exception_handlers(app)
    return app


def _error(status_code: int, exc: Exception, **extra: object) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__, **extra},
    )


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthenticationMissing)
    async def authentication_missing_handler(request: Request, exc: AuthenticationMissing) -> JSONResponse:
        return _error(401, exc)

    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
        return _error(403, exc)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, exc)

    @app.exception_handler(QuotaExceededError)
    async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), **exc.to_dict()})

    @app.exception_handler(DuplicatePrincipalError)
    async def duplicate_principal_handler(request: Request, exc: DuplicatePrincipalError) -> JSONResponse:
        return _error(409, exc)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return _error(409, exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StorageFailure)
    async def storage_failure_handler(request: Request, exc: StorageFailure) -> JSONResponse:
        logger.error("Storage failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
