"""Blob sinks for downloaded media."""

import mimetypes
import os
import uuid
from pathlib import Path
from typing import Iterable, Protocol

DEFAULT_EXTENSION = "bin"

# WhatsApp types mimetypes misses or maps to an odd extension
EXTENSION_OVERRIDES: dict[str, str] = {
    "image/jpeg": "jpg",
    "audio/ogg": "ogg",
    "audio/opus": "opus",
    "audio/aac": "aac",
    "audio/mp4": "m4a",
}


def file_extension(mime_type: str | None) -> str:
    """Map a MIME type (parameters ignored) to a file extension."""
    base = (mime_type or "").split(";")[0].strip().lower()
    if not base:
        return DEFAULT_EXTENSION
    if base in EXTENSION_OVERRIDES:
        return EXTENSION_OVERRIDES[base]
    guessed = mimetypes.guess_extension(base, strict=False)
    return guessed.lstrip(".") if guessed else DEFAULT_EXTENSION


class BlobSink(Protocol):
    """Destination for media bytes. Returns the URL the blob is served from."""

    def store(self, chunks: Iterable[bytes], *, kind: str, mime_type: str | None) -> tuple[str, int]:
        """Persist chunks, return (url, bytes_written)."""
        ...


class LocalDirectorySink:
    """Writes blobs under `<root>/<kind>s/<uuid>.<ext>`.

    Files are written to a temporary name and renamed once complete, so a
    failed download never leaves a half-written blob behind a URL.
    """

    def __init__(self, root: str | os.PathLike[str], public_base_url: str = "/media") -> None:
        self._root = Path(root)
        self._public_base_url = public_base_url.rstrip("/")

    def store(self, chunks: Iterable[bytes], *, kind: str, mime_type: str | None) -> tuple[str, int]:
        folder = self._root / f"{kind}s"
        folder.mkdir(parents=True, exist_ok=True)

        name = f"{uuid.uuid4().hex}.{file_extension(mime_type)}"
        final_path = folder / name
        tmp_path = folder / f".{name}.part"

        written = 0
        try:
            with open(tmp_path, "wb") as fh:
                for chunk in chunks:
                    if not chunk:
                        continue
                    fh.write(chunk)
                    written += len(chunk)
            os.replace(tmp_path, final_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        return f"{self._public_base_url}/{kind}s/{name}", written
