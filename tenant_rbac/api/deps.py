"""
FastAPI Dependencies
Runtime lifecycle and permission checks for request handlers
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
import structlog

from tenant_rbac.core.config import Settings
from tenant_rbac.core.exceptions import NOT_PERMITTED_MESSAGE, StoreUnavailable
from tenant_rbac.runtime import AuthorizationRuntime, create_runtime
from tenant_rbac.services.authorization import Decision

logger = structlog.get_logger()


def authorization_lifespan(settings: Optional[Settings] = None, **runtime_kwargs):
    """
    Lifespan factory that owns the authorization runtime

    Usage:
        app = FastAPI(lifespan=authorization_lifespan())
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = await create_runtime(settings, **runtime_kwargs)
        app.state.authz = runtime
        try:
            yield
        finally:
            await runtime.close()

    return lifespan


def get_runtime(request: Request) -> AuthorizationRuntime:
    """
    Authorization runtime attached to the application

    Raises:
        HTTPException: If the runtime was never started (fail closed)
    """
    runtime = getattr(request.app.state, "authz", None)
    if runtime is None:
        logger.error("Authorization runtime not initialized")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=NOT_PERMITTED_MESSAGE,
        )
    return runtime


def get_principal(request: Request) -> str:
    """
    Authenticated principal id placed on the request by the authentication layer

    Raises:
        HTTPException: If the request is not authenticated
    """
    principal = getattr(request.state, "principal_id", None)
    if not principal:
        logger.warning("Missing authenticated principal")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def _context_value(request: Request, name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    return request.path_params.get(name) or request.query_params.get(name)


def require_permission(
    permission: str,
    tenant_param: Optional[str] = "tenant_id",
    project_param: Optional[str] = "project_id",
):
    """
    Dependency factory for checking one permission

    Tenant and project ids are read from path parameters first, then query
    parameters. Any deny or fault answers 403 with no internal detail.

    Args:
        permission: Required permission token
        tenant_param: Name of the tenant id parameter
        project_param: Name of the project id parameter

    Returns:
        Dependency function resolving to the allow ``Decision``
    """
    async def permission_checker(
        request: Request,
        principal: str = Depends(get_principal),
        runtime: AuthorizationRuntime = Depends(get_runtime),
    ) -> Decision:
        tenant = _context_value(request, tenant_param)
        project = _context_value(request, project_param)

        try:
            with structlog.contextvars.bound_contextvars(method=request.method, path=request.url.path):
                decision = await runtime.gate.require(principal, tenant, project, permission)
        except StoreUnavailable as e:
            logger.error("Authorization unavailable", principal=principal, permission=permission, error=str(e))
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=NOT_PERMITTED_MESSAGE)
        except Exception:
            logger.exception("Authorization check failed", principal=principal, permission=permission)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=NOT_PERMITTED_MESSAGE)

        if not decision.allowed:
            logger.warning(
                "Principal lacks required permission",
                principal=principal,
                required=permission,
                code=decision.code.value,
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=NOT_PERMITTED_MESSAGE)

        logger.debug("Permission check passed", principal=principal, permission=permission)
        return decision

    return permission_checker
