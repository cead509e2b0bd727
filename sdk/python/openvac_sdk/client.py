from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import requests  # type: ignore[import-untyped]

from openvac_core.conversion.events import ProgressEvent, is_terminal
from openvac_core.conversion.settings import ConversionSettings
from openvac_core.frames.store import FrameTier, best_tier, frame_filename
from openvac_core.streaming.sse import SseDecoder

DEFAULT_BASE_URL = "http://localhost:8082"
DEFAULT_TIMEOUT_S = 30
_STREAM_CHUNK = 4096


class OpenvacHTTPError(RuntimeError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class StreamDisconnectedError(RuntimeError):
    """The progress stream ended before a ``done`` or ``error`` event."""


def _env_timeout() -> int:
    raw = os.getenv("OPENVAC_TIMEOUT_S")
    if raw:
        try:
            return int(raw)
        except ValueError:
            return DEFAULT_TIMEOUT_S
    return DEFAULT_TIMEOUT_S


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason or "request failed"
    if isinstance(payload, dict):
        detail = payload.get("detail") or payload.get("error")
        if detail:
            return str(detail)
    return str(payload)


@dataclass(frozen=True)
class OpenvacClient:
    base_url: str | None = None
    timeout: int | None = None
    session: requests.Session | None = None

    def __post_init__(self) -> None:
        base_url = self.base_url or os.getenv("OPENVAC_URL") or DEFAULT_BASE_URL
        timeout = self.timeout if self.timeout is not None else _env_timeout()
        object.__setattr__(self, "base_url", base_url.rstrip("/"))
        object.__setattr__(self, "timeout", timeout)
        object.__setattr__(self, "session", self.session or requests.Session())

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _check(self, response: requests.Response) -> requests.Response:
        if response.status_code >= 400:
            raise OpenvacHTTPError(response.status_code, _error_message(response))
        return response

    def health(self) -> dict[str, Any]:
        response = self.session.get(self._url("/health"), timeout=self.timeout)
        return self._check(response).json()

    def convert(
        self,
        video_path: str | Path,
        settings: ConversionSettings | None = None,
    ) -> Iterator[ProgressEvent]:
        """Upload a video and yield progress events as they arrive.

        The iterator ends after the terminal event. A stream that closes
        without one raises :class:`StreamDisconnectedError`; there is no
        resumption.
        """
        path = Path(video_path)
        form = (settings or ConversionSettings()).to_form()
        with path.open("rb") as handle:
            response = self.session.post(
                self._url("/api/convert"),
                files={"video": (path.name, handle, "application/octet-stream")},
                data=form,
                stream=True,
                timeout=(self.timeout, None),
            )
        with response:
            self._check(response)
            decoder = SseDecoder()
            try:
                for chunk in response.iter_content(chunk_size=_STREAM_CHUNK):
                    for event in decoder.feed(chunk):
                        yield event
                        if is_terminal(event):
                            return
            except requests.RequestException as exc:
                raise StreamDisconnectedError(f"Progress stream interrupted: {exc}") from exc
            decoder.close()
        raise StreamDisconnectedError("Progress stream closed before completion")

    def preview(
        self,
        video_path: str | Path,
        settings: ConversionSettings | None = None,
        *,
        session_key: str | None = None,
    ) -> dict[FrameTier, list[str]]:
        path = Path(video_path)
        headers = {"X-Preview-Session": session_key} if session_key else {}
        with path.open("rb") as handle:
            response = self.session.post(
                self._url("/api/preview"),
                files={"video": (path.name, handle, "application/octet-stream")},
                data=(settings or ConversionSettings()).to_form(),
                headers=headers,
                timeout=None,
            )
        payload = self._check(response).json()
        frames: dict[FrameTier, list[str]] = {}
        for key, texts in (payload.get("frames") or {}).items():
            tier = FrameTier.parse(key)
            if tier is not None and texts:
                frames[tier] = list(texts)
        return frames

    def frame(self, job_id: str, tier: str | FrameTier, index: int) -> str | None:
        tier_value = FrameTier(tier).value
        response = self.session.get(
            self._url(f"/api/frames/{job_id}/{tier_value}/{frame_filename(index)}"),
            timeout=self.timeout,
        )
        if response.status_code == 404:
            return None
        return self._check(response).text

    def load_tier(
        self,
        job_id: str,
        tier: str | FrameTier,
        *,
        limit: int | None = None,
    ) -> list[str]:
        frames: list[str] = []
        index = 1
        while limit is None or index <= limit:
            text = self.frame(job_id, tier, index)
            if text is None:
                break
            frames.append(text)
            index += 1
        return frames

    def load_frames(
        self,
        job_id: str,
        requested: str | FrameTier | None = None,
    ) -> tuple[FrameTier | None, list[str]]:
        tiers = {tier: self.load_tier(job_id, tier) for tier in FrameTier}
        chosen = best_tier(tiers, requested)
        if chosen is None:
            return None, []
        return chosen, tiers[chosen]

    def delete_job(self, job_id: str) -> bool:
        response = self.session.delete(
            self._url(f"/api/jobs/{job_id}"),
            timeout=self.timeout,
        )
        if response.status_code == 404:
            return False
        self._check(response)
        return True
