from openvac_core.frames.store import (
    TIER_PREFERENCE,
    FrameArtifact,
    FrameStore,
    FrameTier,
    best_tier,
    frame_filename,
    parse_frame_filename,
    read_tier_dir,
)

__all__ = [
    "FrameArtifact",
    "FrameStore",
    "FrameTier",
    "TIER_PREFERENCE",
    "best_tier",
    "frame_filename",
    "parse_frame_filename",
    "read_tier_dir",
]
