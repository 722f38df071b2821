"""
Sandbox Lifecycle HTTP API

FastAPI server exposing sandbox orchestration to the web app.

Endpoints:
- POST /api/projects/{project_id}/sandbox - Get or create the project's sandbox
- DELETE /api/sandboxes/{sandbox_id} - Terminate a sandbox
- POST /api/projects/{project_id}/dev-server - Start the dev server
- GET /api/projects/{project_id}/health - Debounced health refresh and UI status
- POST /api/projects/{project_id}/watch - Start health polling
- DELETE /api/projects/{project_id}/watch - Stop health polling
- POST /api/projects/{project_id}/recover - Recover a broken sandbox
- POST /api/fragments/{fragment_id}/snapshot - Snapshot a fragment
- POST /api/projects/{project_id}/snapshots/cleanup - Snapshot retention
- POST /api/projects/{project_id}/deploy - Build and deploy
- GET /health - Health check
"""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import sentry_sdk
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from config import settings
from services import (
    ConfigurationError,
    DeploymentError,
    DevServerError,
    FragmentNotFoundError,
    ProviderError,
    ProvisioningError,
    ProvisionOptions,
    RestorationError,
    SandboxError,
    SandboxNotFoundError,
    close_services,
    get_services,
    init_services,
    ui_status,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# =============================================================================
# Sentry Initialization
# =============================================================================

if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.node_env,
        traces_sample_rate=1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
            LoggingIntegration(
                level=logging.INFO,  # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Create events for ERROR+
            ),
        ],
        # Filter out health check noise from traces
        traces_sampler=lambda ctx: 0.0 if ctx.get("name") in ["/health"] else 1.0,
        release=f"sandbox-lifecycle@{VERSION}",
    )
    logger.info(f"Sentry initialized (environment: {settings.node_env})")
else:
    logger.warning("SENTRY_DSN not set, Sentry monitoring disabled")


# =============================================================================
# Authentication
# =============================================================================

security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """Verify the internal API key from the Authorization header."""
    # Skip auth in development mode if no API key is configured
    if not settings.internal_api_key:
        return True

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Compare using constant-time comparison to prevent timing attacks
    if not secrets.compare_digest(credentials.credentials, settings.internal_api_key):
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


# =============================================================================
# Request/Response Models
# =============================================================================

class ProvisionRequest(BaseModel):
    """Request to get or create a project's sandbox."""
    fragment_id: Optional[str] = None
    template_name: Optional[str] = None
    recovery_image_id: Optional[str] = None
    force_new: bool = False
    files: Optional[dict[str, str]] = None
    imported_from: Optional[str] = None


class SandboxResponse(BaseModel):
    sandbox_id: str
    sandbox_url: Optional[str] = None
    tunnels: dict[str, str]


class TerminateResponse(BaseModel):
    sandbox_id: str
    cleared_projects: int


class DevServerRequest(BaseModel):
    port: Optional[int] = None
    wait_for_ready: bool = True


class DevServerResponse(BaseModel):
    sandbox_id: str
    url: str
    ready: bool


class RecoverRequest(BaseModel):
    fragment_id: Optional[str] = None
    template_name: Optional[str] = None


class SnapshotRequest(BaseModel):
    sandbox_id: str
    keep_count: Optional[int] = None


class CleanupRequest(BaseModel):
    keep_count: Optional[int] = None


class DeployRequest(BaseModel):
    app_name: Optional[str] = None
    fragment_id: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str


# =============================================================================
# App State Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("[API] Starting sandbox lifecycle server")
    await init_services()
    yield
    await close_services()
    logger.info("[API] Shutting down sandbox lifecycle server")


app = FastAPI(
    title="Sandbox Lifecycle API",
    description="HTTP API for sandbox provisioning, recovery and deployment",
    version=VERSION,
    lifespan=lifespan,
)


# =============================================================================
# Error Handling
# =============================================================================

def status_for(exc: SandboxError) -> int:
    if isinstance(exc, (SandboxNotFoundError, FragmentNotFoundError)):
        return 404
    if isinstance(exc, ConfigurationError):
        return 400
    if isinstance(exc, RestorationError):
        return 500
    if isinstance(exc, (ProvisioningError, DevServerError, DeploymentError, ProviderError)):
        return 502
    return 500


@app.exception_handler(SandboxError)
async def sandbox_error_handler(request: Request, exc: SandboxError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"[API] {request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def require_sandbox(project_id: str) -> str:
    project = await get_services().store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
    if not project.sandbox_id:
        raise HTTPException(status_code=409, detail=f"Project {project_id} has no sandbox")
    return project.sandbox_id


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow().isoformat(),
        version=VERSION,
    )


# =============================================================================
# Sandbox Endpoints
# =============================================================================

@app.post(
    "/api/projects/{project_id}/sandbox",
    response_model=SandboxResponse,
    dependencies=[Depends(verify_api_key)],
)
async def provision_sandbox(project_id: str, request: ProvisionRequest):
    """Reconnect to the project's sandbox or create a new one."""
    services = get_services()
    handle = await services.provisioner.get_or_create(
        project_id,
        ProvisionOptions(**request.model_dump()),
    )
    return SandboxResponse(
        sandbox_id=handle.sandbox_id,
        sandbox_url=handle.url_for(services.config.dev_server_port),
        tunnels={str(port): url for port, url in handle.tunnels.items()},
    )


@app.delete(
    "/api/sandboxes/{sandbox_id}",
    response_model=TerminateResponse,
    dependencies=[Depends(verify_api_key)],
)
async def terminate_sandbox(sandbox_id: str):
    """Terminate a sandbox and clear it from every project."""
    cleared = await get_services().provisioner.terminate(sandbox_id)
    return TerminateResponse(sandbox_id=sandbox_id, cleared_projects=cleared)


@app.post(
    "/api/projects/{project_id}/dev-server",
    response_model=DevServerResponse,
    dependencies=[Depends(verify_api_key)],
)
async def start_dev_server(project_id: str, request: DevServerRequest):
    """
    Start the dev server. `ready` is false when index.html did not appear
    within the readiness timeout; the server may still come up later.
    """
    services = get_services()
    sandbox_id = await require_sandbox(project_id)
    url = await services.dev_server.start(sandbox_id, project_id, port=request.port)

    ready = False
    if request.wait_for_ready:
        ready = await services.dev_server.wait_until_ready(sandbox_id)

    return DevServerResponse(sandbox_id=sandbox_id, url=url, ready=ready)


# =============================================================================
# Health and Recovery Endpoints
# =============================================================================

@app.get("/api/projects/{project_id}/health", dependencies=[Depends(verify_api_key)])
async def project_health(project_id: str):
    """
    Refresh the project's health and return the report with the editor status.

    Refreshes are debounced; a skipped refresh returns the last known state
    with `refreshed: false`.
    """
    recovery = get_services().recovery
    state = await recovery.refresh(project_id)
    refreshed = state is not None
    if state is None:
        state = recovery.state(project_id)

    report = recovery.last_report(project_id)
    status = ui_status(state)
    return {
        "project_id": project_id,
        "state": state.status.value,
        "status": status.status,
        "description": status.description,
        "refreshed": refreshed,
        "report": report.to_dict() if report else None,
    }


@app.post("/api/projects/{project_id}/watch", dependencies=[Depends(verify_api_key)])
async def watch_project(project_id: str):
    """Start periodic health polling (and automatic recovery) for a project."""
    services = get_services()
    if await services.store.get_project(project_id) is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")

    services.recovery.start(project_id)
    return {
        "project_id": project_id,
        "watching": True,
        "interval_s": services.recovery.poll_interval_s,
    }


@app.delete("/api/projects/{project_id}/watch", dependencies=[Depends(verify_api_key)])
async def unwatch_project(project_id: str):
    """Stop health polling for a project."""
    recovery = get_services().recovery
    await recovery.stop(project_id)
    return {"project_id": project_id, "watching": recovery.is_watching(project_id)}


@app.post("/api/projects/{project_id}/recover", dependencies=[Depends(verify_api_key)])
async def recover_sandbox(project_id: str, request: RecoverRequest):
    """Recover the project's sandbox. Skipped while a recovery is running."""
    result = await get_services().recovery.recover(
        project_id,
        fragment_id=request.fragment_id,
        template_name=request.template_name,
    )
    if result is None:
        return {"project_id": project_id, "status": "skipped"}

    return {
        "project_id": project_id,
        "status": "recovered" if result.recovered else "healthy",
        "sandbox_id": result.sandbox_id,
        "sandbox_url": result.sandbox_url,
        "source": result.source,
    }


# =============================================================================
# Snapshot Endpoints
# =============================================================================

@app.post("/api/fragments/{fragment_id}/snapshot", dependencies=[Depends(verify_api_key)])
async def create_snapshot(fragment_id: str, request: SnapshotRequest):
    """Snapshot the sandbox filesystem onto a fragment."""
    record = await get_services().snapshots.create(
        request.sandbox_id,
        fragment_id,
        keep_count=request.keep_count,
    )
    return {
        "fragment_id": record.fragment_id,
        "image_id": record.image_id,
        "provider": record.provider,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


@app.post("/api/projects/{project_id}/snapshots/cleanup", dependencies=[Depends(verify_api_key)])
async def cleanup_snapshots(project_id: str, request: CleanupRequest):
    """Delete all but the newest snapshots for a project."""
    result = await get_services().snapshots.cleanup(project_id, keep_count=request.keep_count)
    return {"project_id": project_id, "deleted": result.deleted, "kept": result.kept}


# =============================================================================
# Deployment Endpoints
# =============================================================================

@app.post("/api/projects/{project_id}/deploy", dependencies=[Depends(verify_api_key)])
async def deploy_project(project_id: str, request: DeployRequest):
    """Build the app in its sandbox and upload it to the deployment plane."""
    sandbox_id = await require_sandbox(project_id)
    result = await get_services().deployment.deploy(
        sandbox_id,
        project_id,
        app_name=request.app_name,
        fragment_id=request.fragment_id,
    )
    content = {
        "success": result.success,
        "deployment_url": result.deployment_url,
        "error": result.error,
        "logs": result.logs,
    }
    return JSONResponse(status_code=200 if result.success else 502, content=content)


# =============================================================================
# Main Entry Point
# =============================================================================

def start_server(host: str | None = None, port: int | None = None, reload: bool = False):
    """Start the FastAPI server."""
    uvicorn.run(
        "api:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    start_server()
