"""Screenshot capture, normalization and persistence."""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Any

from PIL import Image

from .cdp import CDPTransport
from .errors import ControlError, ErrorKind
from .media import MediaStore
from .strategies import Strategy, first_success
from .tabs import TabOperations

logger = logging.getLogger(__name__)

DEFAULT_SCREENSHOT_MAX_SIDE = 2000
DEFAULT_SCREENSHOT_MAX_BYTES = 5 * 1024 * 1024
SCREENSHOT_JPEG_QUALITY = 85
SCREENSHOT_MEDIA_SUBDIR = "browser"

_SIDE_LADDER = (1800, 1600, 1400, 1200, 1000, 800)
_QUALITY_LADDER = (85, 75, 65, 55, 45, 35)


@dataclass(frozen=True)
class NormalizedScreenshot:
    data: bytes
    content_type: str


def _detect_content_type(image: Image.Image) -> str:
    return Image.MIME.get(image.format or "", "image/png")


def _encode_jpeg(image: Image.Image, side: int, quality: int) -> bytes:
    resized = image.copy()
    resized.thumbnail((side, side), Image.Resampling.LANCZOS)
    if resized.mode != "RGB":
        resized = resized.convert("RGB")
    buffer = io.BytesIO()
    resized.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()


def normalize_screenshot(
    data: bytes,
    max_side: int = DEFAULT_SCREENSHOT_MAX_SIDE,
    max_bytes: int = DEFAULT_SCREENSHOT_MAX_BYTES,
) -> NormalizedScreenshot:
    """Bound a screenshot's longest side and byte size.

    An image already within both limits is returned unchanged with its
    detected content type. Otherwise it is re-encoded as JPEG, walking down a
    ladder of sizes and qualities until it fits.

    Raises:
        ValueError: If no rung of the ladder fits under ``max_bytes``.
    """
    with Image.open(io.BytesIO(data)) as image:
        image.load()
        longest = max(image.size)
        if longest <= max_side and len(data) <= max_bytes:
            return NormalizedScreenshot(data, _detect_content_type(image))

        start = min(max_side, longest)
        sides = [start] + [s for s in _SIDE_LADDER if s < start]
        smallest = len(data)
        for side in sides:
            for quality in _QUALITY_LADDER:
                encoded = _encode_jpeg(image, side, quality)
                smallest = min(smallest, len(encoded))
                if len(encoded) <= max_bytes:
                    logger.debug(
                        "Screenshot reduced to %dpx q%d (%d -> %d bytes)",
                        side,
                        quality,
                        len(data),
                        len(encoded),
                    )
                    return NormalizedScreenshot(encoded, "image/jpeg")

    raise ValueError(
        f"Screenshot could not be reduced below {max_bytes / (1024 * 1024):.0f}MB "
        f"(smallest attempt {smallest} bytes)"
    )


class ScreenshotPipeline:
    """Capture a tab, normalize the image and save it to the media store."""

    def __init__(
        self,
        tabs: TabOperations,
        transport: CDPTransport,
        store: MediaStore,
        max_side: int = DEFAULT_SCREENSHOT_MAX_SIDE,
        max_bytes: int = DEFAULT_SCREENSHOT_MAX_BYTES,
    ) -> None:
        self.tabs = tabs
        self.transport = transport
        self.store = store
        self.max_side = max_side
        self.max_bytes = max_bytes

    async def capture(
        self, target_id: str | None = None, full_page: bool = False
    ) -> dict[str, Any]:
        """Screenshot a tab of the running browser.

        JPEG is requested first; PNG is the fallback when the JPEG capture
        fails. Never launches a browser.
        """
        tab = await self.tabs.resolve_existing(target_id)
        if not tab.ws_url:
            raise ControlError(ErrorKind.TARGET_NOT_FOUND)
        ws_url = tab.ws_url

        raw = await first_success(
            [
                Strategy(
                    "jpeg",
                    lambda: self.transport.capture_screenshot(
                        ws_url,
                        full_page=full_page,
                        format="jpeg",
                        quality=SCREENSHOT_JPEG_QUALITY,
                    ),
                ),
                Strategy(
                    "png",
                    lambda: self.transport.capture_screenshot(
                        ws_url, full_page=full_page, format="png"
                    ),
                ),
            ],
            label="screenshot",
        )

        normalized = await asyncio.to_thread(
            normalize_screenshot, raw, self.max_side, self.max_bytes
        )
        self.store.ensure_ready()
        saved = await asyncio.to_thread(
            self.store.save,
            normalized.data,
            normalized.content_type,
            SCREENSHOT_MEDIA_SUBDIR,
            self.max_bytes,
        )
        logger.info("Saved screenshot of %s to %s", tab.target_id, saved.path)
        return {
            "ok": True,
            "path": str(saved.path.resolve()),
            "targetId": tab.target_id,
            "url": tab.url,
        }
