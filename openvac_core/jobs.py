from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from openvac_core.config import Config
from openvac_core.conversion.orchestrator import ConversionOrchestrator, ConversionRun
from openvac_core.conversion.settings import ConversionSettings
from openvac_core.logging import get_logger
from openvac_core.uploads import input_extension, save_upload
from openvac_core.workspace import JOB_PREFIX, Workspace, WorkspaceFactory

logger = get_logger(__name__)


@dataclass(frozen=True)
class Job:
    id: str
    workspace: Workspace
    video_path: Path
    settings: ConversionSettings

    @property
    def frames_root(self) -> Path:
        return self.workspace.frames_dir


class JobService:
    def __init__(
        self,
        workspaces: WorkspaceFactory,
        orchestrator: ConversionOrchestrator,
        *,
        max_upload_bytes: int = 0,
        convert_timeout_s: float | None = None,
    ) -> None:
        self.workspaces = workspaces
        self.orchestrator = orchestrator
        self._max_upload_bytes = max_upload_bytes
        self._convert_timeout_s = convert_timeout_s

    @classmethod
    def from_config(
        cls,
        config: Config,
        workspaces: WorkspaceFactory,
        orchestrator: ConversionOrchestrator,
    ) -> "JobService":
        return cls(
            workspaces,
            orchestrator,
            max_upload_bytes=config.max_upload_bytes,
            convert_timeout_s=config.convert_timeout_s,
        )

    def submit(
        self,
        reader: BinaryIO,
        filename: str | None,
        settings: ConversionSettings,
    ) -> Job:
        workspace = self.workspaces.create(JOB_PREFIX)
        video_path = workspace.input_path(input_extension(filename))
        try:
            size = save_upload(reader, video_path, self._max_upload_bytes)
        except BaseException:
            self.workspaces.destroy(workspace.root)
            raise
        logger.info(
            "Job submitted (%d bytes)",
            size,
            extra={"job_id": workspace.id, "status": "submitted"},
        )
        return Job(
            id=workspace.id,
            workspace=workspace,
            video_path=video_path,
            settings=settings,
        )

    def submit_path(self, source: str | Path, settings: ConversionSettings) -> Job:
        path = Path(source)
        with path.open("rb") as reader:
            return self.submit(reader, path.name, settings)

    def start(self, job: Job) -> ConversionRun:
        """Prepare the conversion run; the child starts when events are read.

        The workspace is protected from reaping from the first read until
        the run finishes.
        """
        return self.orchestrator.start(
            job.id,
            job.video_path,
            job.frames_root,
            job.settings,
            tiered=True,
            timeout_s=self._convert_timeout_s,
            on_open=lambda: self.workspaces.acquire(job.id),
            on_close=lambda: self.workspaces.release(job.id),
        )

    def delete(self, job_id: str) -> bool:
        workspace = self.workspaces.locate(job_id)
        if workspace is None:
            return False
        self.workspaces.destroy(workspace.root)
        logger.info("Job deleted", extra={"job_id": job_id, "status": "deleted"})
        return True
