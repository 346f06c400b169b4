"""
PharmaCare Authorization
FastAPI application entry point

The lifespan handler builds one set of authorization services per process
and stores the router on app.state.rbac for request handlers.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from pharmacare_authz import __version__
from pharmacare_authz.api.routes import admin_rbac
from pharmacare_authz.core.config import settings
from pharmacare_authz.core.database import AsyncSessionLocal
from pharmacare_authz.core.exceptions import AuthzBaseError
from pharmacare_authz.core.feature_flags import FeatureFlagStore
from pharmacare_authz.services.backward_compatibility import BackwardCompatibilityService
from pharmacare_authz.services.dynamic_permission_service import DynamicPermissionService
from pharmacare_authz.services.permission_service import PermissionService
from pharmacare_authz.services.rbac_repository import SqlRoleRepository, SqlUserDirectory

logger = logging.getLogger(__name__)


def build_rbac_service() -> BackwardCompatibilityService:
    """Wire the SQL-backed authorization services."""
    return BackwardCompatibilityService(
        permission_service=PermissionService(),
        dynamic_service=DynamicPermissionService(SqlRoleRepository()),
        flag_store=FeatureFlagStore(),
        user_directory=SqlUserDirectory(),
    )


def create_app(rbac: Optional[BackwardCompatibilityService] = None) -> FastAPI:
    """
    Build the application.

    Args:
        rbac: Pre-built router; when omitted the SQL-backed one is created
            at startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = rbac or build_rbac_service()
        if not service.is_initialized:
            await service.initialize()
        app.state.rbac = service
        logger.info(f"{settings.APP_NAME} started (environment={settings.ENVIRONMENT})")
        yield
        logger.info(f"{settings.APP_NAME} shutting down")

    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        version=__version__,
    )

    @app.exception_handler(AuthzBaseError)
    async def authz_error_handler(request: Request, exc: AuthzBaseError):
        # Details stay in the log; clients get the code only
        logger.error(f"Authorization error on {request.url.path}: {exc.to_dict()}")
        return JSONResponse(
            status_code=500,
            content={"detail": exc.message, "code": exc.code},
        )

    app.include_router(admin_rbac.router, prefix="/admin/rbac", tags=["Admin - RBAC"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check with a DB ping. Returns 503 if the database is unreachable."""
        health_status = {
            "status": "healthy",
            "database": "unknown",
            "rbac_config": app.state.rbac.config.to_dict() if getattr(app.state, "rbac", None) else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            async with AsyncSessionLocal() as db:
                await db.execute(text("SELECT 1"))
            health_status["database"] = "connected"
        except Exception as e:
            health_status["database"] = f"error: {type(e).__name__}"
            health_status["status"] = "unhealthy"
            return JSONResponse(status_code=503, content=health_status)

        return health_status

    return app
