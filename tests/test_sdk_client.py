from __future__ import annotations

import pytest
import requests

from openvac_core.conversion.events import Done, Extracting, Progress
from openvac_core.conversion.settings import ConversionSettings
from openvac_core.frames.store import FrameTier
from openvac_core.streaming.sse import encode_event
from openvac_sdk.client import OpenvacClient, OpenvacHTTPError, StreamDisconnectedError


class FakeResponse:
    def __init__(self, status_code=200, chunks=(), text="", payload=None, error=None):
        self.status_code = status_code
        self.text = text
        self.reason = "reason"
        self._chunks = list(chunks)
        self._payload = payload
        self._error = error

    def iter_content(self, chunk_size=1):
        yield from self._chunks
        if self._error is not None:
            raise self._error

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def __enter__(self):
        return self

    def __exit__(self, *_exc):
        return False


class FakeSession:
    def __init__(self, post_response=None, get_handler=None):
        self.post_response = post_response
        self.get_handler = get_handler
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return self.post_response

    def get(self, url, **_kwargs):
        return self.get_handler(url)


def _stream(*events) -> bytes:
    return b"".join(encode_event(event) for event in events)


def test_convert_yields_events_from_split_chunks(video_file) -> None:
    payload = _stream(
        Extracting(total=2),
        Progress(current=1, total=2),
        Progress(current=2, total=2),
        Done(job_id="a" * 32, frame_count=2),
    )
    chunks = [payload[i : i + 5] for i in range(0, len(payload), 5)]
    session = FakeSession(post_response=FakeResponse(chunks=chunks))
    client = OpenvacClient(base_url="http://svc", session=session)

    events = list(client.convert(video_file, ConversionSettings(fps=24)))

    assert events[-1] == Done(job_id="a" * 32, frame_count=2)
    assert len(events) == 4
    url, kwargs = session.posts[0]
    assert url == "http://svc/api/convert"
    assert kwargs["data"]["fps"] == "24"
    assert kwargs["stream"] is True


def test_convert_without_terminal_event_is_a_disconnect(video_file) -> None:
    session = FakeSession(
        post_response=FakeResponse(chunks=[_stream(Extracting(total=9)), b'data: {"ty'])
    )
    client = OpenvacClient(base_url="http://svc", session=session)
    received = []
    with pytest.raises(StreamDisconnectedError):
        for event in client.convert(video_file):
            received.append(event)
    assert received == [Extracting(total=9)]


def test_convert_transport_error_is_a_disconnect(video_file) -> None:
    session = FakeSession(
        post_response=FakeResponse(
            chunks=[_stream(Extracting(total=1))],
            error=requests.ConnectionError("reset"),
        )
    )
    client = OpenvacClient(base_url="http://svc", session=session)
    with pytest.raises(StreamDisconnectedError):
        list(client.convert(video_file))


def test_convert_http_error(video_file) -> None:
    session = FakeSession(
        post_response=FakeResponse(status_code=400, payload={"detail": "No video file provided"})
    )
    client = OpenvacClient(base_url="http://svc", session=session)
    with pytest.raises(OpenvacHTTPError) as excinfo:
        list(client.convert(video_file))
    assert excinfo.value.status_code == 400
    assert excinfo.value.message == "No video file provided"


def test_load_frames_stops_at_first_gap_and_falls_back() -> None:
    available = {
        "/api/frames/job/low/frame_001.txt": "low 1",
        "/api/frames/job/low/frame_002.txt": "low 2",
        "/api/frames/job/low/frame_004.txt": "low 4",
        "/api/frames/job/high/frame_001.txt": "high 1",
    }

    def handler(url):
        path = url.replace("http://svc", "")
        if path in available:
            return FakeResponse(text=available[path])
        return FakeResponse(status_code=404, payload={"detail": "Frame not found"})

    client = OpenvacClient(base_url="http://svc", session=FakeSession(get_handler=handler))

    assert client.load_frames("job") == (FrameTier.LOW, ["low 1", "low 2"])
    assert client.load_frames("job", "high") == (FrameTier.HIGH, ["high 1"])
    assert client.load_frames("job", "medium") == (FrameTier.LOW, ["low 1", "low 2"])
    assert client.frame("job", "medium", 1) is None
