import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import operator_config
from .deps import get_services
from .routes import router
from .security import get_cors_config, log_security_status, redact_secrets

# Configure logging
logging.basicConfig(
    level=getattr(logging, operator_config.get("server.log_level", "INFO").upper()),
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("[api] Starting Reality Studio Orchestrator")
    log_security_status()
    logger.info(
        f"[api] Server configured for {operator_config.get('server.host')}:{operator_config.get('server.port')}"
    )

    yield

    logger.info("[api] Shutting down Reality Studio Orchestrator")
    if get_services.cache_info().currsize:
        await get_services().orchestrator.wait_for_jobs()


app = FastAPI(
    title="Reality Studio Orchestrator",
    description="Production pipeline for AI-generated reality TV episodes",
    version="0.1.0",
    lifespan=lifespan
)

cors_config = get_cors_config()
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_config["allow_origins"],
    allow_credentials=cors_config["allow_credentials"],
    allow_methods=cors_config["allow_methods"],
    allow_headers=cors_config["allow_headers"],
    max_age=cors_config["max_age"]
)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ())[1:]) or 'body'}: {e.get('msg')}" for e in errors
    ) or "Invalid request"
    logger.warning(f"[api] Rejected {request.url.path}: {message}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": message},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"[api] Unhandled error on {request.url.path}: {redact_secrets(str(exc))}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Internal server error. Please try again or contact support."},
    )


app.include_router(router)


@app.get("/healthz")
async def health_check():
    """Health check endpoint (no authentication required)"""
    return {"status": "healthy", "timestamp": time.time()}
