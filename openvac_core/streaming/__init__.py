from openvac_core.streaming.sse import (
    SSE_HEADERS,
    SSE_MEDIA_TYPE,
    SseDecoder,
    encode_event,
    stream_events,
)

__all__ = [
    "SSE_HEADERS",
    "SSE_MEDIA_TYPE",
    "SseDecoder",
    "encode_event",
    "stream_events",
]
