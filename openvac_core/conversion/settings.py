from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

DEFAULT_FPS = 15.0
DEFAULT_ASPECT_RATIO = 2.0
DEFAULT_BLACK_CLIP_THRESHOLD = 10.0
DEFAULT_MOTION_FILTER_STRENGTH = 0.0


@dataclass(frozen=True)
class ConversionSettings:
    fps: float = DEFAULT_FPS
    aspect_ratio: float = DEFAULT_ASPECT_RATIO
    black_clip_threshold: float = DEFAULT_BLACK_CLIP_THRESHOLD
    motion_filter_strength: float = DEFAULT_MOTION_FILTER_STRENGTH

    def __post_init__(self) -> None:
        if not _is_finite(self.fps) or self.fps <= 0:
            raise ValueError("fps must be positive")
        if not _is_finite(self.aspect_ratio) or self.aspect_ratio <= 0:
            raise ValueError("aspect_ratio must be positive")
        if not _is_finite(self.black_clip_threshold) or self.black_clip_threshold < 0:
            raise ValueError("black_clip_threshold must be non-negative")
        if not _is_finite(self.motion_filter_strength) or self.motion_filter_strength < 0:
            raise ValueError("motion_filter_strength must be non-negative")

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "ConversionSettings":
        """Build settings from untrusted form fields.

        Field names follow the upload form: ``fps``, ``aspect``,
        ``threshold`` and ``motion``. Any value that is missing, not a
        number, or out of range falls back to its default.
        """
        return cls(
            fps=_parse_number(form.get("fps"), DEFAULT_FPS, allow_zero=False),
            aspect_ratio=_parse_number(
                form.get("aspect"), DEFAULT_ASPECT_RATIO, allow_zero=False
            ),
            black_clip_threshold=_parse_number(
                form.get("threshold"), DEFAULT_BLACK_CLIP_THRESHOLD, allow_zero=True
            ),
            motion_filter_strength=_parse_number(
                form.get("motion"), DEFAULT_MOTION_FILTER_STRENGTH, allow_zero=True
            ),
        )

    def to_form(self) -> dict[str, str]:
        return {
            "fps": format_number(self.fps),
            "aspect": format_number(self.aspect_ratio),
            "threshold": format_number(self.black_clip_threshold),
            "motion": format_number(self.motion_filter_strength),
        }


def format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _is_finite(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def _parse_number(raw: Any, default: float, *, allow_zero: bool) -> float:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        return default
    if not math.isfinite(value):
        return default
    if value < 0 or (value == 0 and not allow_zero):
        return default
    return value
