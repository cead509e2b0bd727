from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

from openvac_core.config import Config
from openvac_core.conversion.cancel import CancelToken
from openvac_core.conversion.orchestrator import ConversionOrchestrator
from openvac_core.conversion.settings import ConversionSettings, format_number
from openvac_core.errors import ConversionFailed, PreviewCancelled
from openvac_core.frames.store import TIER_PREFERENCE, FrameTier, read_tier_dir
from openvac_core.logging import get_logger
from openvac_core.media import extract_clip, probe_duration
from openvac_core.uploads import input_extension, save_upload
from openvac_core.workspace import PREVIEW_PREFIX, Workspace, WorkspaceFactory

logger = get_logger(__name__)

DEFAULT_PREVIEW_FRAMES = 10
CLIP_FILENAME = "clip.mp4"


@dataclass(frozen=True)
class PreviewWindow:
    start_s: float
    duration_s: float
    frame_count: int


def preview_window(
    duration_s: float,
    fps: float,
    frame_count: int = DEFAULT_PREVIEW_FRAMES,
) -> PreviewWindow:
    """Centre a ``frame_count``-frame clip on the middle of the source."""
    if fps <= 0:
        raise ValueError("fps must be positive")
    if frame_count <= 0:
        raise ValueError("frame_count must be positive")
    clip_duration = frame_count / fps
    start = max(0.0, duration_s / 2 - clip_duration / 2)
    return PreviewWindow(start_s=start, duration_s=clip_duration, frame_count=frame_count)


@dataclass(frozen=True)
class PreviewResult:
    frames: dict[FrameTier, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"frames": {tier.value: texts for tier, texts in self.frames.items()}}


class PreviewSupersession:
    """Last-write-wins registry of in-flight previews keyed by session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, CancelToken] = {}

    def claim(self, session_key: str) -> CancelToken:
        token = CancelToken()
        with self._lock:
            previous = self._tokens.get(session_key)
            self._tokens[session_key] = token
        if previous is not None:
            previous.cancel()
        return token

    def release(self, session_key: str, token: CancelToken) -> None:
        with self._lock:
            if self._tokens.get(session_key) is token:
                del self._tokens[session_key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class PreviewSampler:
    def __init__(
        self,
        workspaces: WorkspaceFactory,
        orchestrator: ConversionOrchestrator,
        *,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        timeout_s: float | None = 60.0,
        probe_timeout_s: float | None = 30.0,
        frame_count: int = DEFAULT_PREVIEW_FRAMES,
        max_upload_bytes: int = 0,
    ) -> None:
        self._workspaces = workspaces
        self._orchestrator = orchestrator
        self._ffmpeg_bin = ffmpeg_bin
        self._ffprobe_bin = ffprobe_bin
        self._timeout_s = timeout_s
        self._probe_timeout_s = probe_timeout_s
        self._frame_count = frame_count
        self._max_upload_bytes = max_upload_bytes

    @classmethod
    def from_config(
        cls,
        config: Config,
        workspaces: WorkspaceFactory,
        orchestrator: ConversionOrchestrator,
    ) -> "PreviewSampler":
        return cls(
            workspaces,
            orchestrator,
            ffmpeg_bin=config.ffmpeg_bin,
            ffprobe_bin=config.ffprobe_bin,
            timeout_s=config.preview_timeout_s,
            probe_timeout_s=config.probe_timeout_s,
            frame_count=config.preview_frame_count,
            max_upload_bytes=config.max_upload_bytes,
        )

    def sample(
        self,
        source: str | Path,
        settings: ConversionSettings,
        cancel_token: CancelToken | None = None,
    ) -> PreviewResult:
        token = cancel_token or CancelToken()
        with self._workspaces.scoped(PREVIEW_PREFIX) as workspace:
            return self._sample_in(workspace, Path(source), settings, token)

    def sample_upload(
        self,
        reader: BinaryIO,
        filename: str | None,
        settings: ConversionSettings,
        cancel_token: CancelToken | None = None,
    ) -> PreviewResult:
        token = cancel_token or CancelToken()
        with self._workspaces.scoped(PREVIEW_PREFIX) as workspace:
            source = workspace.input_path(input_extension(filename))
            save_upload(reader, source, self._max_upload_bytes)
            return self._sample_in(workspace, source, settings, token)

    def _sample_in(
        self,
        workspace: Workspace,
        source: Path,
        settings: ConversionSettings,
        token: CancelToken,
    ) -> PreviewResult:
        started = time.monotonic()
        # One ceiling covers probing, clip extraction and the converter run.
        deadline = started + self._timeout_s if self._timeout_s else None
        _check(token)
        duration = probe_duration(
            source,
            ffprobe_bin=self._ffprobe_bin,
            timeout_s=self._remaining(deadline, self._probe_timeout_s),
        )
        window = preview_window(duration, settings.fps, self._frame_count)
        _check(token)
        clip = extract_clip(
            source,
            workspace.root / CLIP_FILENAME,
            start_s=window.start_s,
            duration_s=window.duration_s,
            fps=settings.fps,
            frame_count=window.frame_count,
            ffmpeg_bin=self._ffmpeg_bin,
            timeout_s=self._remaining(deadline, self._probe_timeout_s),
        )
        _check(token)
        outcome = self._orchestrator.run(
            workspace.id,
            clip,
            workspace.frames_dir,
            settings,
            tiered=True,
            timeout_s=self._remaining(deadline),
            cancel_token=token,
        )
        if not outcome.ok:
            _check(token)
            if deadline is not None and time.monotonic() >= deadline:
                raise ConversionFailed(self._timeout_message())
            raise ConversionFailed(outcome.error or "Conversion failed")

        frames: dict[FrameTier, list[str]] = {}
        for tier in TIER_PREFERENCE:
            texts = read_tier_dir(workspace.frames_dir, tier)
            if texts:
                frames[tier] = texts
        logger.info(
            "Preview sampled",
            extra={
                "job_id": workspace.id,
                "duration_ms": int((time.monotonic() - started) * 1000),
                "frame_count": sum(len(texts) for texts in frames.values()),
            },
        )
        return PreviewResult(frames=frames)

    def _remaining(self, deadline: float | None, cap: float | None = None) -> float | None:
        if deadline is None:
            return cap
        left = deadline - time.monotonic()
        if left <= 0:
            raise ConversionFailed(self._timeout_message())
        return left if cap is None else min(cap, left)

    def _timeout_message(self) -> str:
        return f"Preview timed out after {format_number(self._timeout_s or 0)}s"


def _check(token: CancelToken) -> None:
    if token.cancelled:
        raise PreviewCancelled("Preview cancelled")
