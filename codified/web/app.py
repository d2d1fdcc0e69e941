"""FastAPI application for Codified extractions and the project data library."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from codified.core.errors import NotFoundError, PreconditionError
from codified.core.logging import configure_logging
from codified.db.connection import close_db
from codified.tasks.dispatch import wait_for_inline_tasks
from codified.web.routes import admin, extractions, health, library

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield
    # Let in-flight inline merges finish before the engine goes away
    await wait_for_inline_tasks()
    await close_db()


app = FastAPI(
    title="Codified API",
    description="Extraction confirmation and project data library",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            logger.info(
                "request_completed",
                status_code=response.status_code,
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


app.add_middleware(RequestLoggingMiddleware)

# Prometheus Metrics
Instrumentator().instrument(app).expose(app)


# Exception Handlers
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PreconditionError)
async def precondition_handler(request: Request, exc: PreconditionError):
    logger.info("request_rejected", error=str(exc))
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422, content={"detail": exc.errors(include_url=False, include_context=False)}
    )


# Include Routers
app.include_router(health.router)
app.include_router(extractions.router)
app.include_router(library.router)
app.include_router(admin.router)
