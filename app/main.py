from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import AsyncSessionLocal, init_db
from app.core.errors import PermissionEngineError
from app.features.users.routes import router as user_router
from app.features.permissions.routes import router as permission_router
from app.features.grants.dependencies import get_notifier
from app.features.grants.routes import router as grant_router
from app.features.audit.routes import router as audit_router
from app.features.bulk.routes import router as bulk_router
from app.features.sweeper.routes import router as sweeper_router
from app.features.sweeper.sweeper import ExpirationSweeper
from app.features.users.dependencies import get_authorization_header
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Permission Engine",
    description="Permission resolution and grant lifecycle service",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(
    key_func=get_authorization_header,
    default_limits=[config.RATE_LIMIT],
    enabled=config.RATE_LIMIT_ENABLED,
)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

sweeper = ExpirationSweeper(AsyncSessionLocal, notifier=get_notifier())


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


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


@app.exception_handler(PermissionEngineError)
async def permission_engine_exception_handler(_request: Request, exc: PermissionEngineError):
    if exc.status_code >= 500:
        log.error("Engine error %s: %s", exc.code, exc.message)
    else:
        log.info("Engine error %s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


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


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.on_event("startup")
async def startup():
    """Initialize database and start the expiration sweeper."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")
    if config.SWEEP_INTERVAL_SECONDS > 0:
        await sweeper.start(config.SWEEP_INTERVAL_SECONDS)


@app.on_event("shutdown")
async def shutdown():
    await sweeper.stop()


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Permission Engine API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": [
                "/users/*", "/permissions/*", "/grants/*", "/audit/*", "/bulk/*", "/sweeper/*"
            ],
        },
        "features": {
            "permissions": "Permission catalog with dependencies, conflicts and risk requirements",
            "grants": "Direct, temporary, delegated and approval-gated grants",
            "audit": "Append-only audit trail of grant lifecycle transitions",
            "bulk": "Bulk grant, revoke and clone with per-pair results",
            "sweeper": "Expiration of time-limited grants"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])

# Permission catalog
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])

# Grants, effective permissions and approvals
app.include_router(grant_router, prefix="/grants", tags=["grants"])

# Audit trail
app.include_router(audit_router, prefix="/audit", tags=["audit"])

# Bulk operations
app.include_router(bulk_router, prefix="/bulk", tags=["bulk"])

# On-demand sweep
app.include_router(sweeper_router, prefix="/sweeper", tags=["sweeper"])
