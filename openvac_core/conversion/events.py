from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Extracting:
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "extracting", "total": self.total}


@dataclass(frozen=True)
class Progress:
    current: int
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "progress", "current": self.current, "total": self.total}


@dataclass(frozen=True)
class Done:
    job_id: str
    frame_count: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "done", "jobId": self.job_id, "frameCount": self.frame_count}


@dataclass(frozen=True)
class Error:
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "error", "message": self.message}


ProgressEvent = Union[Extracting, Progress, Done, Error]


def is_terminal(event: ProgressEvent) -> bool:
    return isinstance(event, (Done, Error))


def event_from_dict(payload: dict[str, Any]) -> ProgressEvent:
    kind = payload.get("type")
    try:
        if kind == "extracting":
            return Extracting(total=int(payload["total"]))
        if kind == "progress":
            return Progress(current=int(payload["current"]), total=int(payload["total"]))
        if kind == "done":
            return Done(
                job_id=str(payload["jobId"]),
                frame_count=int(payload["frameCount"]),
            )
        if kind == "error":
            return Error(message=str(payload["message"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Malformed {kind} event: {payload}") from exc
    raise ValueError(f"Unknown event type: {kind}")
