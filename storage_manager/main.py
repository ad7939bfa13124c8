import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from storage_manager.core.config import settings, validate_config
from storage_manager.core.database import create_all_tables, get_database_url
from storage_manager.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from storage_manager.core.logging import configure_logging
from storage_manager.core.middleware.request_id import RequestIdMiddleware
from storage_manager.api import assignments, violations, webhooks


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("storage_manager")
    logger.info("Starting Storage Manager backend...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("storage_manager").info("Stopping Storage Manager backend...")


app = FastAPI(title="Storage Manager", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(assignments.router)
app.include_router(violations.router)
app.include_router(webhooks.router)


@app.get("/healthz")
def health():
    return {"status": "ok", "billing_enabled": bool(settings.STORAGE_BILLING_ENABLED)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("storage_manager.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
