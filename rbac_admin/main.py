from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from rbac_admin.core import config
from rbac_admin.core.database.engine import AsyncSessionLocal, init_db
from rbac_admin.core.errors import RbacError
from rbac_admin.core.rate_limit import limiter
from rbac_admin.features.catalog.catalog import get_catalog
from rbac_admin.features.catalog.routes import router as catalog_router
from rbac_admin.features.permissions.routes import audit_router, router as permission_router
from rbac_admin.features.staging.backend import DatabasePermissionBackend
from rbac_admin.features.staging.manager import StagingSessionManager
from rbac_admin.features.staging.routes import router as staging_router
from rbac_admin.features.users.routes import router as user_router
from rbac_admin.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="RBAC Admin",
    description="Role and permission administration with staged batch edits",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.rbac_admin.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def init_state(application: FastAPI) -> None:
    """Attach the permission backend and staging session manager to the app."""
    catalog = get_catalog()
    backend = DatabasePermissionBackend(AsyncSessionLocal, catalog)
    application.state.permission_backend = backend
    application.state.staging_sessions = StagingSessionManager(
        backend,
        catalog,
        apply_concurrency=config.APPLY_CONCURRENCY,
        idle_timeout=config.STAGING_IDLE_TIMEOUT,
        max_sessions=config.STAGING_MAX_SESSIONS,
    )


init_state(app)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RbacError)
async def rbac_error_handler(_request: Request, exc: RbacError):
    log.info("%s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.on_event("startup")
async def startup():
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "RBAC Admin API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "features": {
            "permissions": "Roles, per-role (resource, action, scope) grants and bulk updates",
            "catalog": "Protectable resources and the actions each supports",
            "staging": "Batch matrix edits applied as one unit with per-edit outcomes",
            "users": "User-role assignment",
            "audit_logs": "Trail of administrative changes",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
app.include_router(catalog_router, prefix="/catalog", tags=["catalog"])
app.include_router(staging_router, prefix="/staging", tags=["staging"])
app.include_router(user_router, prefix="/users", tags=["users"])
app.include_router(audit_router, tags=["audit"])
