import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import Request as FastAPIRequest
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from relayer.api import api_router
from relayer.core.config import get_settings
from relayer.core.rate_limit import limiter, rate_limit_exceeded_handler
from relayer.core.request_logging import RequestLoggingMiddleware
from relayer.core.security_headers import SecurityHeadersMiddleware
from relayer.services.relayer import create_relayer_service

settings = get_settings()

# Module loggers emit INFO (per-vote correlation lines) instead of Python's default WARNING.
logging.getLogger("relayer").setLevel(logging.INFO)

# The relayer surface is read-only status plus vote submission
CORS_ALLOW_METHODS = ["GET", "POST", "OPTIONS"]

REQUIRED_VOTE_FIELDS = ("pollId", "candidateId", "voter", "signature")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests inject their own service before startup
    if getattr(app.state, "relayer", None) is None:
        app.state.relayer = create_relayer_service(settings)
    relayer = app.state.relayer

    startup = asyncio.create_task(relayer.startup_check())
    try:
        yield
    finally:
        startup.cancel()
        await asyncio.gather(startup, return_exceptions=True)
        await relayer.aclose()
        app.state.relayer = None


app = FastAPI(
    title="Gasless Voting Relayer",
    description="Submits signed votes on behalf of voters, paid from poll creator funds",
    version="0.1.0",
    lifespan=lifespan,
    # Disable API docs in production
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if any(error["type"] == "missing" for error in errors):
        return "Missing required parameters: " + ", ".join(REQUIRED_VOTE_FIELDS)
    details = []
    for error in errors:
        field = ".".join(str(part) for part in error["loc"] if part != "body")
        details.append(f"{field}: {error['msg']}" if field else error["msg"])
    return "Invalid request: " + "; ".join(details)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: FastAPIRequest, exc: RequestValidationError
) -> JSONResponse:
    """Malformed input is refused before any ledger interaction."""
    message = _validation_message(exc)
    logger.info("Rejected malformed request on %s: %s", request.url.path, message)
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(Exception)
async def global_exception_handler(request: FastAPIRequest, exc: Exception) -> JSONResponse:
    """Catch unhandled exceptions and return a generic 500 response."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    content = {"success": False, "message": "Internal server error"}
    if not settings.is_production:
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Security headers (added first, runs last in middleware chain)
app.add_middleware(SecurityHeadersMiddleware)

# CORS
if settings.cors_origins.strip() == "*":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=["*"],
    )
else:
    origins = [origin.strip() for origin in settings.cors_origins.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=["Content-Type"],
    )

app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
