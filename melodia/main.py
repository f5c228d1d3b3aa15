import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv

# Load env from the project root .env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from melodia.core.config import settings, validate_config
from melodia.core.logging import configure_logging
from melodia.core.middleware.request_id import RequestIdMiddleware
from melodia.core.middleware.metrics import MetricsMiddleware
from melodia.core.validation import validate_env
from melodia.core.database import create_all_tables
from melodia.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from melodia.api import auth, billing, health, metrics

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("melodia")
    logger.info("Starting Melodia billing service...")
    if os.getenv("MELODIA_CREATE_TABLES") == "1":
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping Melodia billing service...")


app = FastAPI(title="Melodia - Premium Billing", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/api", tags=["auth"])
app.include_router(billing.router, prefix="/api", tags=["payment"])
app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "melodia.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_level="info",
    )
