from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

from openvac_core.conversion.settings import format_number
from openvac_core.errors import MediaError, RecoverableError


def _ensure_tool(name: str) -> None:
    if shutil.which(name) is None:
        raise RecoverableError(f"Missing required binary: {name}")


def _raise_media_error(step: str, stderr: str) -> None:
    message = stderr.strip() or "Unknown media error"
    raise MediaError(f"{step} failed: {message}")


def _parse_duration(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(str(value))
    except ValueError:
        return None


def probe_duration(
    path: str | Path,
    *,
    ffprobe_bin: str = "ffprobe",
    timeout_s: float | None = None,
) -> float:
    """Return the container duration in seconds, reading metadata only."""
    _ensure_tool(ffprobe_bin)
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        str(path),
    ]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout_s,
        )
    except subprocess.CalledProcessError as exc:
        _raise_media_error("ffprobe", exc.stderr or exc.stdout or str(exc))
    except subprocess.TimeoutExpired:
        raise MediaError(f"ffprobe timed out after {format_number(timeout_s or 0)}s")

    try:
        payload = json.loads(result.stdout or "{}")
    except ValueError as exc:
        raise MediaError("ffprobe returned unreadable metadata") from exc
    format_info = payload.get("format", {}) or {}
    duration = _parse_duration(format_info.get("duration"))
    if duration is None or duration != duration or duration <= 0:
        raise MediaError("Source has no readable duration")
    return duration


def extract_clip(
    source: str | Path,
    destination: str | Path,
    *,
    start_s: float,
    duration_s: float,
    fps: float,
    frame_count: int,
    ffmpeg_bin: str = "ffmpeg",
    timeout_s: float | None = None,
) -> Path:
    _ensure_tool(ffmpeg_bin)
    output = Path(destination)
    cmd = [
        ffmpeg_bin,
        "-v",
        "error",
        "-y",
        "-ss",
        f"{start_s:.3f}",
        "-i",
        str(source),
        "-t",
        f"{duration_s:.3f}",
        "-vframes",
        str(frame_count),
        "-r",
        format_number(fps),
        "-an",
        str(output),
    ]
    try:
        subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout_s,
        )
    except subprocess.CalledProcessError as exc:
        _raise_media_error("ffmpeg extract clip", exc.stderr or exc.stdout or str(exc))
    except subprocess.TimeoutExpired:
        raise MediaError(f"ffmpeg timed out after {format_number(timeout_s or 0)}s")
    if not output.exists() or output.stat().st_size == 0:
        raise MediaError("ffmpeg extract clip produced no output")
    return output
