import os
import tempfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


@dataclass(frozen=True)
class Config:
    scratch_root: str
    converter_script: str
    converter_shell: str
    ffmpeg_bin: str
    ffprobe_bin: str
    convert_timeout_s: float
    preview_timeout_s: float
    probe_timeout_s: float
    preview_frame_count: int
    max_upload_bytes: int
    job_ttl_seconds: int
    reap_interval_seconds: int
    env: str
    log_level: str

    def reaping_enabled(self) -> bool:
        return self.job_ttl_seconds > 0

    @classmethod
    def from_env(cls) -> "Config":
        scratch_root = os.getenv("OPENVAC_SCRATCH_ROOT") or os.path.join(
            tempfile.gettempdir(), "openvac-jobs"
        )
        converter_script = os.getenv("OPENVAC_CONVERTER_SCRIPT") or str(
            Path.cwd().parent / "openvac.sh"
        )
        converter_shell = os.getenv("OPENVAC_CONVERTER_SHELL", "bash").strip() or "bash"
        ffmpeg_bin = os.getenv("FFMPEG_BIN", "ffmpeg").strip() or "ffmpeg"
        ffprobe_bin = os.getenv("FFPROBE_BIN", "ffprobe").strip() or "ffprobe"

        convert_timeout_s = _parse_positive_float(
            "CONVERT_TIMEOUT_S", os.getenv("CONVERT_TIMEOUT_S", "300")
        )
        preview_timeout_s = _parse_positive_float(
            "PREVIEW_TIMEOUT_S", os.getenv("PREVIEW_TIMEOUT_S", "60")
        )
        probe_timeout_s = _parse_positive_float(
            "PROBE_TIMEOUT_S", os.getenv("PROBE_TIMEOUT_S", "30")
        )
        preview_frame_count = _parse_int(
            "PREVIEW_FRAME_COUNT", os.getenv("PREVIEW_FRAME_COUNT", "10")
        )
        if preview_frame_count <= 0:
            raise ValueError("PREVIEW_FRAME_COUNT must be positive")
        max_upload_bytes = _parse_int(
            "MAX_UPLOAD_BYTES", os.getenv("MAX_UPLOAD_BYTES", "500000000")
        )
        job_ttl_seconds = _parse_int("JOB_TTL_SECONDS", os.getenv("JOB_TTL_SECONDS", "0"))
        reap_interval_seconds = _parse_int(
            "REAP_INTERVAL_SECONDS", os.getenv("REAP_INTERVAL_SECONDS", "300")
        )
        env = os.getenv("ENV", "dev").strip().lower() or "dev"
        log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

        return cls(
            scratch_root=scratch_root,
            converter_script=converter_script,
            converter_shell=converter_shell,
            ffmpeg_bin=ffmpeg_bin,
            ffprobe_bin=ffprobe_bin,
            convert_timeout_s=convert_timeout_s,
            preview_timeout_s=preview_timeout_s,
            probe_timeout_s=probe_timeout_s,
            preview_frame_count=preview_frame_count,
            max_upload_bytes=max_upload_bytes,
            job_ttl_seconds=max(0, job_ttl_seconds),
            reap_interval_seconds=max(1, reap_interval_seconds),
            env=env,
            log_level=log_level,
        )


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_positive_float(name: str, value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
