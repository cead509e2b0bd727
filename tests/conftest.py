from pathlib import Path

import pytest

from openvac_core.config import get_config
from openvac_core.conversion.orchestrator import ConversionOrchestrator
from openvac_core.workspace import WorkspaceFactory

FIXTURES = Path(__file__).resolve().parent / "fixtures"
FAKE_RASTERIZER = FIXTURES / "fake_rasterizer.sh"

_FAKE_ENV = (
    "FAKE_FRAMES",
    "FAKE_TIERS",
    "FAKE_EXIT",
    "FAKE_DELAY",
    "FAKE_SLEEP",
    "FAKE_STDERR",
    "FAKE_ARGS_FILE",
)


@pytest.fixture(autouse=True)
def _openvac_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    monkeypatch.setenv("OPENVAC_SCRATCH_ROOT", str(tmp_path / "scratch"))
    monkeypatch.setenv("OPENVAC_CONVERTER_SCRIPT", str(FAKE_RASTERIZER))
    monkeypatch.setenv("OPENVAC_CONVERTER_SHELL", "bash")
    monkeypatch.setenv("JOB_TTL_SECONDS", "0")
    for name in _FAKE_ENV:
        monkeypatch.delenv(name, raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    return tmp_path / "scratch"


@pytest.fixture
def workspaces(scratch_root: Path) -> WorkspaceFactory:
    return WorkspaceFactory(scratch_root)


@pytest.fixture
def orchestrator() -> ConversionOrchestrator:
    return ConversionOrchestrator(script=FAKE_RASTERIZER, poll_interval_s=0.05)


@pytest.fixture
def video_file(tmp_path: Path) -> Path:
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"not really a video")
    return path
