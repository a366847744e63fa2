"""Local file transport for the publications file."""

from __future__ import annotations

import asyncio
from pathlib import Path

from ksi.core.errors import ClientClosedError, NetworkError


class FilePublicationsFileTransport:
    """Reads a publications file from disk, off the event loop."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._closed = False

    async def fetch_publications_file(self) -> bytes:
        if self._closed:
            raise ClientClosedError("Publications file transport is closed")
        try:
            return await asyncio.to_thread(self.path.read_bytes)
        except OSError as exc:
            raise NetworkError(f"Cannot read publications file {self.path}: {exc}") from exc

    async def close(self) -> None:
        self._closed = True
