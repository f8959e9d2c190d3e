import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from dareboard/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from dareboard.core.config import settings, validate_config  # noqa: E402
from dareboard.core.logging import configure_logging  # noqa: E402
from dareboard.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from dareboard.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from dareboard.core.validation import validate_env  # noqa: E402
from dareboard.core.database import create_all_tables  # noqa: E402
from dareboard.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from dareboard.api import dares, health, metrics  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("dareboard")
    logger.info("Starting Dareboard backend...")
    app.state.startup_time = time.time()
    try:
        create_all_tables()
    except Exception as e:
        # readyz reports the missing tables; keep serving liveness
        logger.error(f"Could not create tables on startup: {e}")
    try:
        yield
    finally:
        logging.getLogger("dareboard").info("Stopping Dareboard backend...")


app = FastAPI(title="Dareboard - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dares.router, tags=["dares"])
app.include_router(health.router, tags=["health"])
app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
