"""FastAPI server for ShopSavr savings ingestion and dashboard"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shopsavr.api.routes.health import router as health_router
from shopsavr.api.routes.savings import router as savings_router
from shopsavr.config import API_HOST, API_PORT, APP_VERSION, EXTENSION_ID, is_development
from shopsavr.infrastructure.database import init_database, validate_schema
from shopsavr.observability.logging import get_logger
from shopsavr.observability.telemetry import counter, log_event
from shopsavr.utils.redaction import redact

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create and validate the schema before serving (idempotent)."""
    try:
        logger.info("Initializing database schema...")
        init_database()
        validate_schema()
        logger.info("Database initialization complete")
    except sqlite3.OperationalError as e:
        logger.critical("Database schema error: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e
    except ValueError as e:
        logger.critical("Database schema invalid: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e

    log_event("api.startup", service="shopsavr-api", version=APP_VERSION)
    yield


app = FastAPI(title="ShopSavr API", version=APP_VERSION, lifespan=lifespan)


# Custom validation error handler to prevent information leakage
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Return field names only, never the validation rules.

    Side Effects:
        - Logs the full errors with the URL redacted
        - Increments api.validation_errors
    """
    logger.warning("Validation error on %s: %s", redact(str(request.url)), exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


# CORS: the extension and the dashboard site only
ALLOWED_ORIGINS = ["https://shopsavr.xyz", "https://www.shopsavr.xyz"]

if EXTENSION_ID:
    ALLOWED_ORIGINS.append(f"chrome-extension://{EXTENSION_ID}")

if is_development():
    ALLOWED_ORIGINS.extend(
        [
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000",
        ]
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

app.include_router(health_router)
app.include_router(savings_router)


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "ShopSavr API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "ingest": "/api/savings/events",
            "summary": "/api/savings/summary",
            "history": "/api/savings/history",
        },
    }


def main() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run("shopsavr.api.app:app", host=API_HOST, port=API_PORT, reload=is_development())


if __name__ == "__main__":
    main()
