from __future__ import annotations

import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from openvac_core.errors import (
    ConversionFailed,
    MediaError,
    OpenvacError,
    PreviewCancelled,
    RecoverableError,
    UploadTooLarge,
    ValidationError,
)

REQUEST_ID_HEADER = "x-request-id"
CLIENT_CLOSED_REQUEST = 499


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    commit: str
    timestamp: str


def cors_origins(*, raw: str | None = None, env: str | None = None) -> list[str]:
    raw_value = raw if raw is not None else os.getenv("CORS_ALLOW_ORIGINS", "")
    if raw_value:
        return [origin.strip() for origin in raw_value.split(",") if origin.strip()]
    env_value = (env or os.getenv("ENV", "dev")).lower()
    if env_value in {"dev", "local", "test"}:
        return ["*"]
    return []


def apply_cors_middleware(
    app: FastAPI,
    *,
    raw_origins: str | None = None,
    env: str | None = None,
) -> list[str]:
    origins = cors_origins(raw=raw_origins, env=env)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
            expose_headers=[REQUEST_ID_HEADER],
        )
    return origins


def request_id(header_value: str | None) -> str:
    if header_value:
        return header_value
    return uuid.uuid4().hex


def add_request_id_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def _add_request_id(request: Request, call_next):
        value = request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = value
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = value
        return response


def status_for_error(exc: OpenvacError) -> int:
    if isinstance(exc, UploadTooLarge):
        return 413
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, MediaError):
        return 422
    if isinstance(exc, PreviewCancelled):
        return CLIENT_CLOSED_REQUEST
    if isinstance(exc, RecoverableError):
        return 503
    if isinstance(exc, ConversionFailed):
        return 500
    return 500


def build_health_response(
    service_name: str,
    *,
    status: str = "ok",
    version: str | None = None,
    commit: str | None = None,
) -> HealthResponse:
    return HealthResponse(
        status=status,
        service=service_name,
        version=version or os.getenv("OPENVAC_VERSION", "dev"),
        commit=commit or os.getenv("GIT_COMMIT", "unknown"),
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    )
