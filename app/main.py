from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import time
from contextlib import asynccontextmanager
from datetime import datetime

from .config import settings, build_monitor_config, CHAIN_CONFIGS
from .database import RecordStore
from .error_handling import NotFoundError, UnsupportedChainError, ValidationError
from .monitoring import EnhancedRiskMonitor
from .routes import router

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

SERVICE_NAME = "Vault Risk Monitor"
SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    startup_start_time = time.time()
    logger.info("Starting vault risk monitor")

    app.state.store = RecordStore()
    # Hosts may set app.state.market_data_source before startup to feed the loop
    app.state.monitor = EnhancedRiskMonitor(
        build_monitor_config(settings),
        market_data_source=getattr(app.state, "market_data_source", None)
    )

    if settings.MONITOR_AUTOSTART:
        await app.state.monitor.start()

    logger.info(
        "Vault risk monitor ready",
        supported_chains=len(CHAIN_CONFIGS),
        monitoring=app.state.monitor.is_running,
        startup_time_seconds=round(time.time() - startup_start_time, 2)
    )

    yield

    logger.info("Shutting down vault risk monitor")
    await app.state.monitor.stop()
    logger.info("Vault risk monitor shutdown complete")


app = FastAPI(
    title=SERVICE_NAME,
    description="Liquidation-risk monitoring for agent credit vaults",
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    logger.info("Request completed",
                method=request.method,
                url=str(request.url),
                status_code=response.status_code,
                process_time=round(process_time, 3))

    response.headers["X-Process-Time"] = str(process_time)
    return response


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "status_code": status_code,
            "timestamp": datetime.utcnow().isoformat()
        }
    )


@app.exception_handler(UnsupportedChainError)
async def unsupported_chain_handler(request: Request, exc: UnsupportedChainError):
    logger.warning("Unsupported chain requested", url=str(request.url), chain_id=exc.chain_id)
    return _error_response(400, str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    logger.info("Resource not found", url=str(request.url), detail=str(exc))
    return _error_response(404, str(exc))


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    logger.warning("Invalid request", url=str(request.url), detail=str(exc))
    return _error_response(400, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning("Malformed request body", url=str(request.url), errors=len(exc.errors()))
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "status_code": 400,
            "details": [
                {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
                for err in exc.errors()
            ],
            "timestamp": datetime.utcnow().isoformat()
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handler for HTTP exceptions"""
    logger.warning("HTTP exception",
                   method=request.method,
                   url=str(request.url),
                   status_code=exc.status_code,
                   detail=exc.detail)
    return _error_response(exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    logger.error("Unhandled exception",
                 method=request.method,
                 url=str(request.url),
                 error=str(exc),
                 error_type=type(exc).__name__)
    return _error_response(500, "Internal server error")


app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint with service information"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "operational",
        "timestamp": datetime.utcnow().isoformat(),
        "endpoints": {
            "health": "/health",
            "status": "/api/risk-monitor/status",
            "summary": "/api/risk-monitor/summary",
            "alerts": "/api/risk-monitor/alerts",
            "vaults": "/api/credit-vaults",
            "protection": "/api/liquidation-protection/check",
            "docs": "/docs"
        }
    }


@app.get("/health")
async def health(request: Request):
    monitor = request.app.state.monitor
    return {
        "status": "healthy",
        "monitoring": monitor.is_running,
        "store": request.app.state.store.health_check(),
        "timestamp": datetime.utcnow().isoformat()
    }
