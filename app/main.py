from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.config import Settings
from app.controllers import api
from app.db import init_db
from app.dependencies import ApiError, ErrorResponse
from app.logger import setup_logging
from app.services.errors import ServiceError

settings = Settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(init_db, settings)
    yield


app = FastAPI(
    title="QuickCalories API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Device-ID"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content=ErrorResponse(error=message).model_dump()
    )


@app.exception_handler(ApiError)
async def api_error_handler(_request: Request, exc: ApiError) -> JSONResponse:
    return _error(exc.status_code, exc.message)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    logger.warning(
        "%s %s failed: %s",
        request.method,
        request.url.path,
        exc.message,
        extra={"status_code": exc.status_code},
    )
    return _error(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        loc = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
        message = f"{loc}: {errors[0].get('msg')}" if loc else str(errors[0].get("msg"))
    else:
        message = "Invalid request"
    return _error(400, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "%s %s crashed: %s", request.method, request.url.path, exc, exc_info=exc
    )
    return _error(500, "Internal server error")


app.include_router(api.router)

Instrumentator().instrument(app).expose(app)
