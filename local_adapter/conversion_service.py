from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from openvac_core.config import Config, get_config
from openvac_core.conversion.cancel import CancelToken
from openvac_core.conversion.orchestrator import ConversionOrchestrator
from openvac_core.conversion.settings import ConversionSettings
from openvac_core.errors import OpenvacError, UploadTooLarge
from openvac_core.frames.store import FrameStore, parse_frame_filename
from openvac_core.jobs import JobService
from openvac_core.logging import configure_logging, get_logger
from openvac_core.preview import PreviewSampler, PreviewSupersession
from openvac_core.services.fastapi_scaffolding import (
    HealthResponse,
    add_request_id_middleware,
    apply_cors_middleware,
    build_health_response,
    status_for_error,
)
from openvac_core.streaming.sse import SSE_HEADERS, SSE_MEDIA_TYPE, stream_events
from openvac_core.workspace import WorkspaceFactory, WorkspaceReaper

SERVICE_NAME = "openvac-conversion"

configure_logging(
    service=SERVICE_NAME,
    env=os.getenv("ENV", "local"),
    version=os.getenv("OPENVAC_VERSION"),
)
logger = get_logger(__name__)

VIDEO_FILE = File(None)
FPS_FORM = Form(None)
ASPECT_FORM = Form(None)
THRESHOLD_FORM = Form(None)
MOTION_FORM = Form(None)
PREVIEW_SESSION_HEADER = Header(None, alias="X-Preview-Session")

_DISCONNECT_POLL_S = 0.5


@dataclass
class ServiceState:
    config: Config
    workspaces: WorkspaceFactory
    jobs: JobService
    previews: PreviewSampler
    frames: FrameStore
    supersession: PreviewSupersession
    reaper: WorkspaceReaper


def build_state(config: Config) -> ServiceState:
    workspaces = WorkspaceFactory(config.scratch_root)
    orchestrator = ConversionOrchestrator.from_config(config)
    return ServiceState(
        config=config,
        workspaces=workspaces,
        jobs=JobService.from_config(config, workspaces, orchestrator),
        previews=PreviewSampler.from_config(config, workspaces, orchestrator),
        frames=FrameStore(workspaces),
        supersession=PreviewSupersession(),
        reaper=WorkspaceReaper(
            workspaces,
            ttl_seconds=config.job_ttl_seconds,
            interval_seconds=config.reap_interval_seconds,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    state = build_state(get_config())
    app.state.openvac = state
    state.reaper.start()
    logger.info(
        "Conversion service started",
        extra={"status": "reaping" if state.config.reaping_enabled() else "ready"},
    )
    try:
        yield
    finally:
        state.reaper.stop()


app = FastAPI(lifespan=lifespan)
apply_cors_middleware(app)
add_request_id_middleware(app)


class JobFramesResponse(BaseModel):
    jobId: str
    tier: str | None
    frames: list[str]


def _state(request: Request) -> ServiceState:
    state = getattr(request.app.state, "openvac", None)
    if state is None:
        state = build_state(get_config())
        request.app.state.openvac = state
    return state


def _settings(
    fps: str | None,
    aspect: str | None,
    threshold: str | None,
    motion: str | None,
) -> ConversionSettings:
    return ConversionSettings.from_form(
        {"fps": fps, "aspect": aspect, "threshold": threshold, "motion": motion}
    )


async def _cancel_on_disconnect(request: Request, token: CancelToken) -> None:
    while not token.cancelled:
        if await request.is_disconnected():
            logger.info("Preview client disconnected")
            token.cancel()
            return
        await asyncio.sleep(_DISCONNECT_POLL_S)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return build_health_response(SERVICE_NAME)


@app.post("/api/convert")
async def convert(
    request: Request,
    video: UploadFile | None = VIDEO_FILE,
    fps: str | None = FPS_FORM,
    aspect: str | None = ASPECT_FORM,
    threshold: str | None = THRESHOLD_FORM,
    motion: str | None = MOTION_FORM,
) -> StreamingResponse:
    if video is None:
        raise HTTPException(status_code=400, detail="No video file provided")
    state = _state(request)
    settings = _settings(fps, aspect, threshold, motion)
    try:
        job = await run_in_threadpool(
            state.jobs.submit,
            video.file,
            video.filename,
            settings,
        )
    except UploadTooLarge as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    finally:
        await video.close()

    run = state.jobs.start(job)
    logger.info(
        "Streaming conversion",
        extra={"job_id": job.id, "request_id": getattr(request.state, "request_id", None)},
    )
    return StreamingResponse(
        stream_events(run, request.is_disconnected),
        media_type=SSE_MEDIA_TYPE,
        headers=SSE_HEADERS,
    )


@app.post("/api/preview")
async def preview(
    request: Request,
    video: UploadFile | None = VIDEO_FILE,
    fps: str | None = FPS_FORM,
    aspect: str | None = ASPECT_FORM,
    threshold: str | None = THRESHOLD_FORM,
    motion: str | None = MOTION_FORM,
    session: str | None = PREVIEW_SESSION_HEADER,
) -> dict[str, object]:
    if video is None:
        raise HTTPException(status_code=400, detail="No video file provided")
    state = _state(request)
    settings = _settings(fps, aspect, threshold, motion)
    session_key = session.strip() if session and session.strip() else None
    token = state.supersession.claim(session_key) if session_key else CancelToken()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, token))
    try:
        result = await run_in_threadpool(
            state.previews.sample_upload,
            video.file,
            video.filename,
            settings,
            token,
        )
    except OpenvacError as exc:
        status = status_for_error(exc)
        logger.warning(
            "Preview failed",
            extra={"status": str(status), "error_message": str(exc)},
        )
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    finally:
        watcher.cancel()
        if session_key:
            state.supersession.release(session_key, token)
        await video.close()
    return result.to_dict()


@app.get("/api/frames/{job_id}/{tier}/{filename}", response_class=PlainTextResponse)
async def get_frame(request: Request, job_id: str, tier: str, filename: str) -> PlainTextResponse:
    index = parse_frame_filename(filename)
    if index is None:
        raise HTTPException(status_code=404, detail="Frame not found")
    text = _state(request).frames.read(job_id, tier, index)
    if text is None:
        raise HTTPException(status_code=404, detail="Frame not found")
    return PlainTextResponse(text)


@app.get("/api/jobs/{job_id}/frames", response_model=JobFramesResponse)
async def get_job_frames(
    request: Request,
    job_id: str,
    tier: str | None = None,
) -> JobFramesResponse:
    state = _state(request)
    if state.workspaces.locate(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    chosen, artifacts = await run_in_threadpool(state.frames.best_available, job_id, tier)
    return JobFramesResponse(
        jobId=job_id,
        tier=chosen.value if chosen is not None else None,
        frames=[artifact.text for artifact in artifacts],
    )


@app.delete("/api/jobs/{job_id}", status_code=204)
async def delete_job(request: Request, job_id: str) -> Response:
    state = _state(request)
    if state.workspaces.is_leased(job_id):
        raise HTTPException(status_code=409, detail="Job is still converting")
    if not await run_in_threadpool(state.jobs.delete, job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return Response(status_code=204)
