from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Sequence

import fsspec

from openvac_core.workspace import WorkspaceFactory


class FrameTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, value: "str | FrameTier | None") -> "FrameTier | None":
        if value is None:
            return None
        if isinstance(value, FrameTier):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


TIER_PREFERENCE: tuple[FrameTier, ...] = (
    FrameTier.MEDIUM,
    FrameTier.LOW,
    FrameTier.HIGH,
)

_FRAME_NAME_RE = re.compile(r"^frame_(\d{3,})\.txt$")


def frame_filename(index: int) -> str:
    if index < 1:
        raise ValueError("Frame indices start at 1")
    return f"frame_{index:03d}.txt"


def parse_frame_filename(name: str) -> int | None:
    match = _FRAME_NAME_RE.match(name)
    if match is None:
        return None
    index = int(match.group(1))
    if index < 1 or frame_filename(index) != name:
        return None
    return index


@dataclass(frozen=True)
class FrameArtifact:
    job_id: str
    tier: FrameTier
    index: int
    text: str


def best_tier(
    tiers: Mapping["str | FrameTier", Sequence[object]],
    requested: "str | FrameTier | None" = None,
) -> FrameTier | None:
    """Pick the tier to display.

    A requested tier wins when it has frames. Otherwise the first non-empty
    tier in medium, low, high order is used, and ``None`` means nothing was
    produced at all.
    """
    available: dict[FrameTier, int] = {}
    for key, frames in tiers.items():
        tier = FrameTier.parse(key)
        if tier is not None:
            available[tier] = len(frames)
    wanted = FrameTier.parse(requested)
    if wanted is not None and available.get(wanted, 0) > 0:
        return wanted
    for tier in TIER_PREFERENCE:
        if available.get(tier, 0) > 0:
            return tier
    return None


def _read_text(fs: fsspec.AbstractFileSystem, path: str) -> str | None:
    try:
        with fs.open(path, "rb") as handle:
            data = handle.read()
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return None
    return data.decode("utf-8", errors="replace")


def read_tier_dir(
    frames_dir: str | Path,
    tier: "str | FrameTier",
    *,
    limit: int | None = None,
) -> list[str]:
    """Read ``frame_001.txt``, ``frame_002.txt``, ... until the first gap."""
    parsed = FrameTier.parse(tier)
    if parsed is None:
        return []
    fs, base = fsspec.core.url_to_fs(str(frames_dir))
    tier_dir = f"{base.rstrip('/')}/{parsed.value}"
    frames: list[str] = []
    index = 1
    while limit is None or index <= limit:
        text = _read_text(fs, f"{tier_dir}/{frame_filename(index)}")
        if text is None:
            break
        frames.append(text)
        index += 1
    return frames


class FrameStore:
    def __init__(self, workspaces: WorkspaceFactory) -> None:
        self._workspaces = workspaces

    def read(self, job_id: str, tier: "str | FrameTier", index: int) -> str | None:
        parsed = FrameTier.parse(tier)
        if parsed is None or index < 1:
            return None
        workspace = self._workspaces.locate(job_id)
        if workspace is None:
            return None
        fs, base = fsspec.core.url_to_fs(str(workspace.frames_dir))
        return _read_text(fs, f"{base.rstrip('/')}/{parsed.value}/{frame_filename(index)}")

    def list_tier(self, job_id: str, tier: "str | FrameTier") -> list[FrameArtifact]:
        parsed = FrameTier.parse(tier)
        workspace = self._workspaces.locate(job_id)
        if parsed is None or workspace is None:
            return []
        texts = read_tier_dir(workspace.frames_dir, parsed)
        return [
            FrameArtifact(job_id=job_id, tier=parsed, index=position, text=text)
            for position, text in enumerate(texts, start=1)
        ]

    def tiers(self, job_id: str) -> dict[FrameTier, list[FrameArtifact]]:
        return {tier: self.list_tier(job_id, tier) for tier in FrameTier}

    def best_available(
        self,
        job_id: str,
        requested: "str | FrameTier | None" = None,
    ) -> tuple[FrameTier | None, list[FrameArtifact]]:
        tiers = self.tiers(job_id)
        chosen = best_tier(tiers, requested)
        if chosen is None:
            return None, []
        return chosen, tiers[chosen]
