"""
FastAPI server for the SkillSwap booking and escrow backend

Run with: uvicorn api_server:app --host 0.0.0.0 --port 8000
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from jobs.scheduler import SkillSwapScheduler
from routes import bookings, skill_requests, wallet
from services.notification_service import notification_service
from utils.error_handler import ErrorResponseBuilder, log_standard_error
from utils.exception_handler import SkillSwapError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: schema, config checks, scheduler. Shutdown: scheduler and notification workers."""
    logger.info("🚀 SkillSwap API starting...")
    Config.log_environment_config()
    if not Config.validate():
        logger.error("❌ Configuration has errors - check the messages above")

    create_tables()

    scheduler = None
    if Config.SCHEDULER_ENABLED:
        scheduler = SkillSwapScheduler()
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    logger.info("🔄 SkillSwap API shutting down...")
    if scheduler is not None:
        scheduler.stop()
    notification_service.shutdown(wait=False)


app = FastAPI(
    title="SkillSwap API",
    description="Skill requests, bookings and wallet escrow",
    lifespan=lifespan
)

app.include_router(skill_requests.router)
app.include_router(bookings.router)
app.include_router(wallet.router)


@app.exception_handler(SkillSwapError)
async def skillswap_error_handler(request: Request, exc: SkillSwapError):
    error = ErrorResponseBuilder.from_domain_error(exc)
    log_standard_error(error, context=f"{request.method} {request.url.path}")
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid value')}" if location else "Invalid request"
    error = ErrorResponseBuilder.validation_error(message)
    log_standard_error(error, context=f"{request.method} {request.url.path}")
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"❌ UNHANDLED: {request.method} {request.url.path}: {exc}", exc_info=True)
    error = ErrorResponseBuilder.unexpected_error()
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.get("/health")
async def health_check():
    database_ok = test_connection()
    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "degraded",
            "service": "skillswap-api",
            "database": "connected" if database_ok else "unavailable",
            "environment": Config.ENVIRONMENT,
        },
    )
