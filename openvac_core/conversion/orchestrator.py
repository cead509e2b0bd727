from __future__ import annotations

import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Iterator

from openvac_core.config import Config
from openvac_core.conversion.cancel import CancelToken
from openvac_core.conversion.events import (
    Done,
    Error,
    Extracting,
    Progress,
    ProgressEvent,
)
from openvac_core.conversion.lines import (
    ExtractedLine,
    LineScanner,
    ProgressLine,
    RasterizerLineScanner,
    iter_lines,
)
from openvac_core.conversion.settings import ConversionSettings, format_number
from openvac_core.logging import get_logger

logger = get_logger(__name__)

_KILL_GRACE_S = 5.0


class RunState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ConversionOutcome:
    ok: bool
    frame_count: int
    error: str | None
    events: tuple[ProgressEvent, ...]


class ConversionRun:
    """One rasterizer invocation, observed as a single-pass event stream.

    The child process is launched when :meth:`events` is first iterated.
    Every path out of the producer ends with exactly one ``Done`` or
    ``Error`` event, unless the consumer stops iterating first, in which
    case the child is terminated and no terminal event is produced.
    """

    def __init__(
        self,
        *,
        job_id: str,
        command: list[str],
        scanner: LineScanner,
        timeout_s: float | None = None,
        poll_interval_s: float = 0.25,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        on_open: Callable[[], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.job_id = job_id
        self.command = list(command)
        self.state = RunState.RUNNING
        self.total_frames = 0
        self._scanner = scanner
        self._timeout_s = timeout_s
        self._poll_interval_s = poll_interval_s
        self._popen = popen
        self._on_open = on_open
        self._on_close = on_close
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._process: subprocess.Popen | None = None
        self._consumed = False
        self._last_current = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._process.pid if self._process is not None else None

    def cancel(self) -> None:
        """Request termination without waiting for the child to exit."""
        self._cancelled.set()
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            _signal(process, signal.SIGTERM)

    def events(self) -> Iterator[ProgressEvent]:
        if self._consumed:
            raise RuntimeError("Conversion events can only be consumed once")
        self._consumed = True
        return self._guarded()

    def _guarded(self) -> Iterator[ProgressEvent]:
        # Runs on first iteration, so a stream that is never read holds nothing.
        if self._on_open is not None:
            self._on_open()
        try:
            yield from self._produce()
        finally:
            if self._on_close is not None:
                self._on_close()

    def _produce(self) -> Iterator[ProgressEvent]:
        if self._cancelled.is_set():
            yield self._fail("Conversion cancelled")
            return

        started = time.monotonic()
        deadline = started + self._timeout_s if self._timeout_s else None
        try:
            process = self._popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            logger.error(
                "Converter failed to launch",
                extra={"job_id": self.job_id, "error_message": str(exc)},
            )
            yield self._fail(str(exc))
            return

        with self._lock:
            self._process = process
        if self._cancelled.is_set():
            _terminate(process)

        logger.info(
            "Converter started",
            extra={"job_id": self.job_id, "pid": process.pid},
        )
        lines: queue.Queue[str | None] = queue.Queue()
        reader = threading.Thread(
            target=_pump_lines,
            args=(process.stdout, lines),
            daemon=True,
            name=f"openvac-stdout-{self.job_id[:8]}",
        )
        drain = threading.Thread(
            target=_drain_stderr,
            args=(process.stderr, self.job_id),
            daemon=True,
            name=f"openvac-stderr-{self.job_id[:8]}",
        )
        reader.start()
        drain.start()

        try:
            failure = None
            while True:
                failure = self._interrupted(deadline)
                if failure:
                    break
                wait = self._wait_slice(deadline)
                try:
                    line = lines.get(timeout=wait)
                except queue.Empty:
                    continue
                if line is None:
                    break
                event = self._translate(line)
                if event is not None:
                    yield event

            exit_code = None
            if failure is None:
                exit_code, failure = self._await_exit(process, deadline)
        except GeneratorExit:
            _terminate(process)
            self.state = RunState.FAILED
            logger.info(
                "Conversion stream closed before completion",
                extra={"job_id": self.job_id, "pid": process.pid},
            )
            raise

        if failure is not None:
            _terminate(process)
        reader.join(timeout=1.0)
        drain.join(timeout=1.0)
        duration_ms = int((time.monotonic() - started) * 1000)

        if failure is not None:
            logger.warning(
                "Conversion aborted",
                extra={
                    "job_id": self.job_id,
                    "duration_ms": duration_ms,
                    "error_message": failure,
                },
            )
            yield self._fail(failure)
            return

        logger.info(
            "Converter exited",
            extra={
                "job_id": self.job_id,
                "exit_code": exit_code,
                "duration_ms": duration_ms,
                "frame_count": self.total_frames,
            },
        )
        if exit_code == 0:
            self.state = RunState.SUCCEEDED
            yield Done(job_id=self.job_id, frame_count=self.total_frames)
        else:
            yield self._fail(f"Converter exited with code {exit_code}")

    def _translate(self, line: str) -> ProgressEvent | None:
        match = self._scanner.classify(line)
        if isinstance(match, ExtractedLine):
            self.total_frames = match.total
            return Extracting(total=match.total)
        if isinstance(match, ProgressLine):
            if match.current < self._last_current:
                logger.debug(
                    "Ignoring out-of-order progress line",
                    extra={"job_id": self.job_id},
                )
                return None
            self._last_current = match.current
            self.total_frames = match.total
            return Progress(current=match.current, total=match.total)
        if line:
            logger.debug(
                "converter: %s",
                line,
                extra={"job_id": self.job_id, "stream": "stdout"},
            )
        return None

    def _interrupted(self, deadline: float | None) -> str | None:
        if self._cancelled.is_set():
            return "Conversion cancelled"
        if deadline is not None and time.monotonic() >= deadline:
            return f"Conversion timed out after {format_number(self._timeout_s or 0)}s"
        return None

    def _wait_slice(self, deadline: float | None) -> float:
        if deadline is None:
            return self._poll_interval_s
        return max(0.0, min(self._poll_interval_s, deadline - time.monotonic()))

    def _await_exit(
        self,
        process: subprocess.Popen,
        deadline: float | None,
    ) -> tuple[int | None, str | None]:
        while True:
            failure = self._interrupted(deadline)
            if failure:
                return None, failure
            try:
                return process.wait(timeout=self._wait_slice(deadline)), None
            except subprocess.TimeoutExpired:
                continue

    def _fail(self, message: str) -> Error:
        self.state = RunState.FAILED
        return Error(message=message)


class ConversionOrchestrator:
    def __init__(
        self,
        *,
        script: str | Path,
        shell: str = "bash",
        scanner: LineScanner | None = None,
        poll_interval_s: float = 0.25,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.script = str(script)
        self.shell = shell
        self.scanner = scanner or RasterizerLineScanner()
        self.poll_interval_s = poll_interval_s
        self._popen = popen

    @classmethod
    def from_config(cls, config: Config) -> "ConversionOrchestrator":
        return cls(script=config.converter_script, shell=config.converter_shell)

    def build_command(
        self,
        video_path: str | Path,
        output_dir: str | Path,
        settings: ConversionSettings,
        tiered: bool = True,
    ) -> list[str]:
        cmd = [
            self.shell,
            self.script,
            "-i",
            str(video_path),
            "-f",
            format_number(settings.fps),
            "-a",
            format_number(settings.aspect_ratio),
            "-t",
            format_number(settings.black_clip_threshold),
            "-m",
            format_number(settings.motion_filter_strength),
            "-o",
            str(output_dir),
        ]
        if tiered:
            cmd.append("-c")
        return cmd

    def start(
        self,
        job_id: str,
        video_path: str | Path,
        output_dir: str | Path,
        settings: ConversionSettings,
        *,
        tiered: bool = True,
        timeout_s: float | None = None,
        on_open: Callable[[], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> ConversionRun:
        return ConversionRun(
            job_id=job_id,
            command=self.build_command(video_path, output_dir, settings, tiered),
            scanner=self.scanner,
            timeout_s=timeout_s,
            poll_interval_s=self.poll_interval_s,
            popen=self._popen,
            on_open=on_open,
            on_close=on_close,
        )

    def convert(
        self,
        job_id: str,
        video_path: str | Path,
        output_dir: str | Path,
        settings: ConversionSettings,
        *,
        tiered: bool = True,
        timeout_s: float | None = None,
    ) -> Iterator[ProgressEvent]:
        return self.start(
            job_id,
            video_path,
            output_dir,
            settings,
            tiered=tiered,
            timeout_s=timeout_s,
        ).events()

    def run(
        self,
        job_id: str,
        video_path: str | Path,
        output_dir: str | Path,
        settings: ConversionSettings,
        *,
        tiered: bool = True,
        timeout_s: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ConversionOutcome:
        conversion = self.start(
            job_id,
            video_path,
            output_dir,
            settings,
            tiered=tiered,
            timeout_s=timeout_s,
        )
        if cancel_token is not None:
            cancel_token.add_callback(conversion.cancel)
        try:
            events = tuple(conversion.events())
        finally:
            if cancel_token is not None:
                cancel_token.remove_callback(conversion.cancel)
        terminal = events[-1]
        if isinstance(terminal, Done):
            return ConversionOutcome(
                ok=True,
                frame_count=terminal.frame_count,
                error=None,
                events=events,
            )
        return ConversionOutcome(
            ok=False,
            frame_count=conversion.total_frames,
            error=terminal.message if isinstance(terminal, Error) else None,
            events=events,
        )


def _pump_lines(stream: IO[bytes] | None, lines: "queue.Queue[str | None]") -> None:
    if stream is None:
        lines.put(None)
        return
    try:
        for line in iter_lines(stream):
            lines.put(line)
    except (OSError, ValueError):
        pass
    finally:
        lines.put(None)


def _drain_stderr(stream: IO[bytes] | None, job_id: str) -> None:
    if stream is None:
        return
    try:
        for line in iter_lines(stream):
            if line:
                logger.warning(
                    "converter stderr: %s",
                    line,
                    extra={"job_id": job_id, "stream": "stderr"},
                )
    except (OSError, ValueError):
        return


def _signal(process: subprocess.Popen, sig: int) -> None:
    # The rasterizer runs in its own session so its ffmpeg children go too.
    try:
        if os.name == "posix":
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        pass


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    _signal(process, signal.SIGTERM)
    try:
        process.wait(timeout=_KILL_GRACE_S)
    except subprocess.TimeoutExpired:
        _signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        process.wait()
