from __future__ import annotations

import os
import re
import shutil
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from openvac_core.logging import get_logger

logger = get_logger(__name__)

JOB_PREFIX = "job"
PREVIEW_PREFIX = "preview"
FRAMES_DIRNAME = "frames"

_JOB_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_WORKSPACE_RE = re.compile(r"^(job|preview)-([0-9a-f]{32})$")


def is_valid_job_id(value: str | None) -> bool:
    return bool(value) and _JOB_ID_RE.match(value) is not None


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Workspace:
    id: str
    prefix: str
    root: Path
    frames_dir: Path

    def input_path(self, ext: str = ".mp4") -> Path:
        return self.root / f"input{ext}"


class WorkspaceFactory:
    """Allocates private scratch directories under one root.

    Each workspace is ``<root>/<prefix>-<id>`` with an empty ``frames``
    directory. Ids come from ``id_factory`` and a directory is never reused.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        id_factory: Callable[[], str] = new_job_id,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root)
        self._id_factory = id_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._leases: dict[str, int] = {}

    def create(self, prefix: str = JOB_PREFIX) -> Workspace:
        self.root.mkdir(parents=True, exist_ok=True)
        workspace_id = self._id_factory()
        if not is_valid_job_id(workspace_id):
            raise ValueError(f"Invalid workspace id: {workspace_id!r}")
        path = self.root / f"{prefix}-{workspace_id}"
        try:
            path.mkdir()
        except FileExistsError as exc:
            raise FileExistsError(f"Workspace already exists: {path}") from exc
        frames_dir = path / FRAMES_DIRNAME
        frames_dir.mkdir()
        return Workspace(id=workspace_id, prefix=prefix, root=path, frames_dir=frames_dir)

    def destroy(self, root: str | Path) -> None:
        path = Path(root)
        if not self._owns(path):
            raise ValueError(f"Refusing to remove path outside scratch root: {path}")
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return

    @contextmanager
    def scoped(self, prefix: str = PREVIEW_PREFIX) -> Iterator[Workspace]:
        workspace = self.create(prefix)
        try:
            yield workspace
        finally:
            self.destroy(workspace.root)

    def locate(self, job_id: str) -> Workspace | None:
        if not is_valid_job_id(job_id):
            return None
        path = self.root / f"{JOB_PREFIX}-{job_id}"
        if not path.is_dir():
            return None
        return Workspace(
            id=job_id,
            prefix=JOB_PREFIX,
            root=path,
            frames_dir=path / FRAMES_DIRNAME,
        )

    def acquire(self, workspace_id: str) -> None:
        """Protect a workspace from reaping until :meth:`release`."""
        with self._lock:
            self._leases[workspace_id] = self._leases.get(workspace_id, 0) + 1

    def release(self, workspace_id: str) -> None:
        with self._lock:
            remaining = self._leases.get(workspace_id, 0) - 1
            if remaining > 0:
                self._leases[workspace_id] = remaining
            else:
                self._leases.pop(workspace_id, None)

    @contextmanager
    def lease(self, workspace_id: str) -> Iterator[None]:
        self.acquire(workspace_id)
        try:
            yield
        finally:
            self.release(workspace_id)

    def is_leased(self, workspace_id: str) -> bool:
        with self._lock:
            return workspace_id in self._leases

    def expired(self, max_age_s: float, now: float | None = None) -> list[Path]:
        if not self.root.is_dir():
            return []
        cutoff = (self._clock() if now is None else now) - max_age_s
        stale: list[Path] = []
        for entry in sorted(self.root.iterdir()):
            match = _WORKSPACE_RE.match(entry.name)
            if match is None or not entry.is_dir():
                continue
            if self.is_leased(match.group(2)):
                continue
            last_touched = _newest_mtime(entry)
            if last_touched is not None and last_touched < cutoff:
                stale.append(entry)
        return stale

    def reap(self, max_age_s: float, now: float | None = None) -> list[Path]:
        removed: list[Path] = []
        for path in self.expired(max_age_s, now=now):
            try:
                self.destroy(path)
            except OSError as exc:
                logger.warning(
                    "Failed to reap workspace",
                    extra={"job_id": path.name, "error_message": str(exc)},
                )
                continue
            removed.append(path)
        if removed:
            logger.info("Reaped %d workspaces", len(removed), extra={"status": "reaped"})
        return removed

    def _owns(self, path: Path) -> bool:
        try:
            resolved = path.resolve()
            root = self.root.resolve()
        except OSError:
            return False
        return resolved != root and root in resolved.parents


def _newest_mtime(path: Path) -> float | None:
    try:
        newest = path.stat().st_mtime
    except FileNotFoundError:
        return None
    for dirpath, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            try:
                newest = max(newest, os.stat(os.path.join(dirpath, name)).st_mtime)
            except FileNotFoundError:
                continue
    return newest


class WorkspaceReaper:
    def __init__(
        self,
        factory: WorkspaceFactory,
        *,
        ttl_seconds: float,
        interval_seconds: float,
    ) -> None:
        self._factory = factory
        self._ttl_seconds = ttl_seconds
        self._interval_seconds = max(1.0, interval_seconds)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._ttl_seconds <= 0:
            return
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="openvac-reaper",
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)

    def run_once(self) -> list[Path]:
        return self._factory.reap(self._ttl_seconds)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except OSError as exc:
                logger.warning(
                    "Workspace reap pass failed",
                    extra={"error_message": str(exc)},
                )
            self._stop.wait(self._interval_seconds)
