"""
Upload File Store for Receipt Insights.

Receipt images are written under one upload directory with a timestamp
prefix, so repeated uploads of the same file name never collide. Blocking
file IO runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from src.lib.clock import Clock, utc_now
from src.lib.exceptions import ValidationError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_file_name(file_name: str) -> str:
    """Reduce an uploaded name to a flat, filesystem-safe base name."""
    base = Path(file_name.replace("\\", "/")).name
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "receipt"


class LocalFileStore:
    """
    Args:
        upload_dir: Directory holding uploaded images (created on demand).
        clock: Used for the timestamp prefix.
    """

    def __init__(self, upload_dir: str | Path, clock: Clock = utc_now) -> None:
        self.upload_dir = Path(upload_dir)
        self.clock = clock

    def _resolve(self, stored_name: str) -> Path:
        if "\x00" in stored_name:
            raise ValidationError("Invalid file name (contains null byte)")
        root = self.upload_dir.resolve()
        resolved = (root / stored_name).resolve()
        if resolved.parent != root:
            raise ValidationError(f"File name {stored_name!r} points outside the upload directory")
        return resolved

    async def save(self, file_name: str, data: bytes) -> str:
        """
        Write an upload and return its stored name.

        Returns:
            ``<unix-millis>-<safe name>``, relative to the upload directory.
        """
        stored_name = f"{int(self.clock().timestamp() * 1000)}-{safe_file_name(file_name)}"
        path = self._resolve(stored_name)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(write)
        logger.debug("Stored upload %s (%d bytes)", stored_name, len(data))
        return stored_name

    async def remove_file(self, stored_name: str) -> None:
        """Delete a stored upload; a missing file is not an error."""
        path = self._resolve(stored_name)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.debug("Removed upload %s", stored_name)


__all__ = ["LocalFileStore", "safe_file_name"]
