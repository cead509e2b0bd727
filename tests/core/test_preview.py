from __future__ import annotations

import io
import subprocess
import time
from pathlib import Path

import pytest

from openvac_core import media, preview
from openvac_core.conversion.cancel import CancelToken
from openvac_core.conversion.settings import ConversionSettings
from openvac_core.errors import (
    ConversionFailed,
    MediaError,
    PreviewCancelled,
    RecoverableError,
)
from openvac_core.frames.store import FrameTier
from openvac_core.preview import (
    PreviewSampler,
    PreviewSupersession,
    preview_window,
)


@pytest.fixture
def fake_media(monkeypatch):
    calls: dict[str, object] = {}

    def fake_probe(path, **_kwargs):
        calls["probe"] = Path(path)
        return 20.0

    def fake_extract(source, destination, **kwargs):
        calls["extract"] = kwargs
        Path(destination).write_bytes(b"clip")
        return Path(destination)

    monkeypatch.setattr(preview, "probe_duration", fake_probe)
    monkeypatch.setattr(preview, "extract_clip", fake_extract)
    return calls


@pytest.fixture
def sampler(workspaces, orchestrator) -> PreviewSampler:
    return PreviewSampler(workspaces, orchestrator, timeout_s=30)


def _leftovers(scratch_root: Path) -> list[str]:
    if not scratch_root.exists():
        return []
    return sorted(path.name for path in scratch_root.iterdir())


@pytest.mark.core
def test_preview_window_centres_clip() -> None:
    window = preview_window(20.0, 15.0)
    assert window.duration_s == pytest.approx(10 / 15)
    assert window.start_s == pytest.approx(10 - (10 / 15) / 2)
    assert window.frame_count == 10


@pytest.mark.core
def test_preview_window_clamps_short_sources() -> None:
    window = preview_window(0.3, 15.0)
    assert window.start_s == 0.0
    with pytest.raises(ValueError):
        preview_window(10.0, 0)


@pytest.mark.core
def test_sample_returns_tiers_in_preference_order(
    sampler, fake_media, video_file, scratch_root, monkeypatch
) -> None:
    monkeypatch.setenv("FAKE_FRAMES", "10")
    result = sampler.sample(video_file, ConversionSettings(fps=15))
    assert list(result.frames) == [FrameTier.MEDIUM, FrameTier.LOW, FrameTier.HIGH]
    assert len(result.frames[FrameTier.MEDIUM]) == 10
    assert result.to_dict()["frames"]["low"][0] == "frame 1 low\n"
    assert fake_media["extract"]["start_s"] == pytest.approx(10 - (10 / 15) / 2)
    assert fake_media["extract"]["frame_count"] == 10
    assert _leftovers(scratch_root) == []


@pytest.mark.core
def test_sample_omits_empty_tiers(sampler, fake_media, video_file, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_TIERS", "high")
    result = sampler.sample(video_file, ConversionSettings())
    assert list(result.frames) == [FrameTier.HIGH]


@pytest.mark.core
def test_converter_failure_cleans_up(
    sampler, fake_media, video_file, scratch_root, monkeypatch
) -> None:
    monkeypatch.setenv("FAKE_EXIT", "1")
    with pytest.raises(ConversionFailed, match="Converter exited with code 1"):
        sampler.sample(video_file, ConversionSettings())
    assert _leftovers(scratch_root) == []


@pytest.mark.core
def test_media_failure_cleans_up(sampler, video_file, scratch_root, monkeypatch) -> None:
    def broken_probe(path, **_kwargs):
        raise MediaError("ffprobe failed: moov atom not found")

    monkeypatch.setattr(preview, "probe_duration", broken_probe)
    with pytest.raises(MediaError):
        sampler.sample(video_file, ConversionSettings())
    assert _leftovers(scratch_root) == []


@pytest.mark.core
def test_preview_deadline_spans_every_step(
    workspaces, orchestrator, video_file, scratch_root, monkeypatch
) -> None:
    calls: dict[str, float] = {}

    def slow_probe(path, **kwargs):
        calls["probe_timeout"] = kwargs["timeout_s"]
        time.sleep(0.3)
        return 20.0

    def fake_extract(source, destination, **kwargs):
        calls["extract_timeout"] = kwargs["timeout_s"]
        Path(destination).write_bytes(b"clip")
        return Path(destination)

    monkeypatch.setattr(preview, "probe_duration", slow_probe)
    monkeypatch.setattr(preview, "extract_clip", fake_extract)
    sampler = PreviewSampler(workspaces, orchestrator, timeout_s=0.2, probe_timeout_s=30)

    with pytest.raises(ConversionFailed, match="Preview timed out after 0.2s"):
        sampler.sample(video_file, ConversionSettings())
    assert calls["probe_timeout"] <= 0.2
    assert "extract_timeout" not in calls
    assert _leftovers(scratch_root) == []


@pytest.mark.core
def test_cancelled_preview_cleans_up(sampler, fake_media, video_file, scratch_root) -> None:
    token = CancelToken()
    token.cancel()
    with pytest.raises(PreviewCancelled):
        sampler.sample(video_file, ConversionSettings(), token)
    assert "probe" not in fake_media
    assert _leftovers(scratch_root) == []


@pytest.mark.core
def test_sample_upload_saves_into_disposable_workspace(
    sampler, fake_media, scratch_root
) -> None:
    result = sampler.sample_upload(io.BytesIO(b"video"), "clip.MOV", ConversionSettings())
    assert FrameTier.MEDIUM in result.frames
    assert fake_media["probe"].name == "input.mov"
    assert _leftovers(scratch_root) == []


@pytest.mark.core
def test_supersession_cancels_previous_claim() -> None:
    registry = PreviewSupersession()
    first = registry.claim("tab-1")
    other = registry.claim("tab-2")
    second = registry.claim("tab-1")
    assert first.cancelled
    assert not second.cancelled
    assert not other.cancelled

    registry.release("tab-1", first)
    assert len(registry) == 2
    registry.release("tab-1", second)
    registry.release("tab-2", other)
    assert len(registry) == 0


@pytest.mark.core
def test_probe_duration_requires_binary(monkeypatch, video_file) -> None:
    monkeypatch.setattr(media.shutil, "which", lambda _name: None)
    with pytest.raises(RecoverableError):
        media.probe_duration(video_file)


@pytest.mark.core
@pytest.mark.parametrize("stdout", ['{"format": {"duration": "0"}}', '{"format": {}}'])
def test_probe_duration_rejects_unreadable_duration(monkeypatch, video_file, stdout) -> None:
    monkeypatch.setattr(media.shutil, "which", lambda name: f"/usr/bin/{name}")

    def fake_run(cmd, **_kwargs):
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(media.subprocess, "run", fake_run)
    with pytest.raises(MediaError):
        media.probe_duration(video_file)


@pytest.mark.core
def test_probe_duration_reads_format_duration(monkeypatch, video_file) -> None:
    monkeypatch.setattr(media.shutil, "which", lambda name: f"/usr/bin/{name}")
    captured = {}

    def fake_run(cmd, **_kwargs):
        captured["cmd"] = cmd
        return subprocess.CompletedProcess(
            cmd, 0, stdout='{"format": {"duration": "12.480000"}}', stderr=""
        )

    monkeypatch.setattr(media.subprocess, "run", fake_run)
    assert media.probe_duration(video_file) == pytest.approx(12.48)
    assert "-show_format" in captured["cmd"]
    assert "-show_streams" not in captured["cmd"]


@pytest.mark.core
def test_extract_clip_failure_raises_media_error(monkeypatch, tmp_path, video_file) -> None:
    monkeypatch.setattr(media.shutil, "which", lambda name: f"/usr/bin/{name}")

    def fake_run(cmd, **_kwargs):
        raise subprocess.CalledProcessError(1, cmd, output="", stderr="Invalid data found")

    monkeypatch.setattr(media.subprocess, "run", fake_run)
    with pytest.raises(MediaError, match="Invalid data found"):
        media.extract_clip(
            video_file,
            tmp_path / "clip.mp4",
            start_s=0,
            duration_s=1,
            fps=10,
            frame_count=10,
        )
