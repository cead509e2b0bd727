from __future__ import annotations

import os
import re
from pathlib import Path
from typing import BinaryIO

from openvac_core.errors import UploadTooLarge

DEFAULT_EXTENSION = ".mp4"
_CHUNK_SIZE = 8 * 1024 * 1024
_EXTENSION_RE = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


def input_extension(filename: str | None) -> str:
    if not filename:
        return DEFAULT_EXTENSION
    ext = os.path.splitext(os.path.basename(filename))[1]
    if not _EXTENSION_RE.match(ext):
        return DEFAULT_EXTENSION
    return ext.lower()


def save_upload(reader: BinaryIO, destination: str | Path, max_bytes: int) -> int:
    """Copy an upload to disk in chunks, enforcing ``max_bytes``."""
    size = 0
    path = Path(destination)
    try:
        with path.open("wb") as writer:
            while True:
                chunk = reader.read(_CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if max_bytes > 0 and size > max_bytes:
                    raise UploadTooLarge("Upload exceeded MAX_UPLOAD_BYTES")
                writer.write(chunk)
    except BaseException:
        cleanup_upload(path)
        raise
    return size


def cleanup_upload(path: str | Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        return
