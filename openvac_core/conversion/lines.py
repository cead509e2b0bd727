from __future__ import annotations

import re
from dataclasses import dataclass
from typing import IO, Iterator, Protocol, Union


@dataclass(frozen=True)
class ExtractedLine:
    total: int


@dataclass(frozen=True)
class ProgressLine:
    current: int
    total: int


@dataclass(frozen=True)
class UnrecognizedLine:
    text: str


LineMatch = Union[ExtractedLine, ProgressLine, UnrecognizedLine]


class LineScanner(Protocol):
    def classify(self, line: str) -> LineMatch: ...


_EXTRACTED_RE = re.compile(r"Extracted (\d+) frames")
_PROGRESS_RE = re.compile(r"Converting frame (\d+)/(\d+)")


class RasterizerLineScanner:
    """Recognizes the two progress markers the rasterizer prints on stdout."""

    def classify(self, line: str) -> LineMatch:
        match = _EXTRACTED_RE.search(line)
        if match:
            return ExtractedLine(total=int(match.group(1)))
        match = _PROGRESS_RE.search(line)
        if match:
            return ProgressLine(current=int(match.group(1)), total=int(match.group(2)))
        return UnrecognizedLine(text=line)


def iter_lines(stream: IO[bytes], encoding: str = "utf-8") -> Iterator[str]:
    for raw in iter(stream.readline, b""):
        yield raw.decode(encoding, errors="replace").rstrip("\r\n")
