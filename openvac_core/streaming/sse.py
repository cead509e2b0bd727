from __future__ import annotations

import asyncio
import codecs
import json
from typing import AsyncIterator, Awaitable, Callable, Iterator

from starlette.concurrency import run_in_threadpool

from openvac_core.conversion.events import (
    ProgressEvent,
    event_from_dict,
    is_terminal,
)
from openvac_core.conversion.orchestrator import ConversionRun
from openvac_core.logging import get_logger

logger = get_logger(__name__)

SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_RECORD_SEPARATOR = "\n\n"
_DATA_PREFIX = "data:"
_DISCONNECT_POLL_S = 0.5


def encode_event(event: ProgressEvent) -> bytes:
    payload = json.dumps(event.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return f"{_DATA_PREFIX} {payload}{_RECORD_SEPARATOR}".encode("utf-8")


class SseDecoder:
    """Incremental decoder for a stream of ``data:`` records.

    Network reads can split a record, or a multi-byte character, anywhere.
    Incomplete input is held until the next :meth:`feed`.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[ProgressEvent]:
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        *records, self._buffer = self._buffer.split(_RECORD_SEPARATOR)
        events = []
        for record in records:
            event = _parse_record(record)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> str:
        """Flush the decoder and return any unterminated trailing data."""
        leftover = (self._buffer + self._decoder.decode(b"", final=True)).strip()
        self._buffer = ""
        if leftover:
            logger.warning(
                "Event stream ended inside a record",
                extra={"error_message": leftover[:200]},
            )
        return leftover


def _parse_record(record: str) -> ProgressEvent | None:
    lines = [line for line in record.split("\n") if line]
    if not lines:
        return None
    data = [line for line in lines if line.startswith(_DATA_PREFIX)]
    if not data:
        return None
    payload = "\n".join(line[len(_DATA_PREFIX) :].lstrip(" ") for line in data)
    try:
        body = json.loads(payload)
    except ValueError:
        logger.warning(
            "Skipping malformed event record",
            extra={"error_message": payload[:200]},
        )
        return None
    if not isinstance(body, dict):
        return None
    try:
        return event_from_dict(body)
    except ValueError as exc:
        logger.warning("Skipping unknown event", extra={"error_message": str(exc)})
        return None


def _next_event(events: Iterator[ProgressEvent]) -> ProgressEvent | None:
    return next(events, None)


async def stream_events(
    run: ConversionRun,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    poll_interval_s: float = _DISCONNECT_POLL_S,
) -> AsyncIterator[bytes]:
    """Bridge a blocking conversion run onto an async byte stream.

    Events are pulled on a worker thread. While waiting for the next event
    the transport is polled, so a quiet converter is still cancelled when
    the client goes away. After a disconnect the remaining events are
    drained without being written. The run is also cancelled if the task
    itself is cancelled before a terminal event.
    """
    events = run.events()
    finished = False
    gone = False
    try:
        while True:
            pending = asyncio.ensure_future(run_in_threadpool(_next_event, events))
            while is_disconnected is not None and not gone:
                done, _ = await asyncio.wait({pending}, timeout=poll_interval_s)
                if done:
                    break
                gone = await _check_disconnect(run, is_disconnected)
            event = await pending
            if event is None:
                break
            if is_disconnected is not None and not gone:
                gone = await _check_disconnect(run, is_disconnected)
            finished = is_terminal(event)
            if not gone:
                yield encode_event(event)
            if finished:
                break
    finally:
        if finished:
            # The producer is parked on its last event; closing it releases the run now.
            events.close()
        else:
            run.cancel()


async def _check_disconnect(
    run: ConversionRun,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> bool:
    if not await is_disconnected():
        return False
    logger.info(
        "Client disconnected from conversion stream",
        extra={"job_id": run.job_id},
    )
    run.cancel()
    return True
