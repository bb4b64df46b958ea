from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import init_db
from app.core.exceptions import GrantError
from app.features.users.routes import router as user_router
from app.features.permission_sets.routes import router as permission_set_router
from app.features.profiles.routes import router as profile_router
from app.features.edit_sessions.routes import router as edit_session_router
from app.features.audit.routes import router as audit_router
from app.features.users.dependencies import get_authorization_header
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Permission Set Admin",
    description="Permission sets, profiles and field-level grants, with Appwrite authentication",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header)
app.state.limiter = limiter


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


def error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"error": {"code": code, "message": message, "details": details or {}}}),
    )


@app.exception_handler(GrantError)
async def grant_error_handler(_request: Request, exc: GrantError):
    log.info("%s: %s", exc.error_code, exc.message)
    return error_response(exc.status_code, exc.error_code, exc.message, exc.details)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(_request: Request, exc: IntegrityError):
    log.warning("Integrity error: %s", exc.orig)
    return error_response(409, "CONFLICT", "Change conflicts with existing data")


@app.exception_handler(OperationalError)
async def operational_error_handler(_request: Request, exc: OperationalError):
    log.error("Store unavailable: %s", exc.orig)
    return error_response(503, "STORE_UNAVAILABLE", "Database temporarily unavailable", {"retryable": True})


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
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Permission Set Admin API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Admin endpoints require a Bearer token in the Authorization header",
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permission_sets": "Table CRUD and field view/edit grants with hierarchy cascades",
            "profiles": "Bundles of permission sets assigned to users",
            "users": "Direct grants, profile assignment and effective access per user",
            "edit_sessions": "Batched edits committed as one transaction",
            "audit_logs": "Cascade counts of administrative changes"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])
app.include_router(permission_set_router, prefix="/permission-sets", tags=["permission-sets"])
app.include_router(profile_router, prefix="/profiles", tags=["profiles"])
app.include_router(edit_session_router, prefix="/edit-sessions", tags=["edit-sessions"])
app.include_router(audit_router, prefix="/audit-logs", tags=["audit-logs"])
