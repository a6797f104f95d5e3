"""On-disk store for captured artifacts."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from .config import config_home

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TTL = 24 * 60 * 60

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "application/pdf": ".pdf",
}


@dataclass(frozen=True)
class SavedMedia:
    id: str
    path: Path
    size: int
    content_type: str


class MediaStore:
    """Writes buffers to ``<root>/<subdir>/<uuid>.<ext>``."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or config_home() / "media"

    def ensure_ready(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def save(
        self,
        data: bytes,
        content_type: str,
        subdir: str = "",
        max_bytes: int | None = None,
    ) -> SavedMedia:
        """Persist ``data`` and return where it went.

        Raises:
            ValueError: If ``data`` exceeds ``max_bytes``.
        """
        if max_bytes is not None and len(data) > max_bytes:
            raise ValueError(
                f"Media exceeds {max_bytes / (1024 * 1024):.0f}MB limit "
                f"({len(data)} bytes)"
            )
        directory = self.root / subdir if subdir else self.root
        directory.mkdir(parents=True, exist_ok=True)

        media_id = uuid.uuid4().hex
        ext = EXTENSIONS.get(content_type.split(";")[0].strip().lower(), ".bin")
        path = directory / f"{media_id}{ext}"
        path.write_bytes(data)
        logger.debug("Saved %d bytes (%s) to %s", len(data), content_type, path)
        return SavedMedia(id=media_id, path=path, size=len(data), content_type=content_type)

    def clean_old(self, ttl_seconds: float = DEFAULT_MEDIA_TTL) -> int:
        """Delete files older than ``ttl_seconds``. Returns the count removed."""
        if not self.root.exists():
            return 0
        cutoff = time.time() - ttl_seconds
        removed = 0
        for path in self.root.rglob("*"):
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning("Failed to remove old media %s: %s", path, e)
        if removed:
            logger.info("Cleaned up %d old media file(s)", removed)
        return removed
