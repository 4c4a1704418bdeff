"""
Background image generation and the versioned store served to the meeting client.
"""
import asyncio
import base64
import binascii
import logging
from typing import Any, Callable, Optional, Tuple

from .config import ImageConfig
from .errors import ParseError, ValidationError
from .transport import ensure_success, parse_json, post_json
from .types import RenderedImage

logger = logging.getLogger(__name__)

BASE64_KEYS = ("data", "bytesBase64", "b64_json")
MIN_BASE64_LENGTH = 32


class BackgroundStore:
    """
    Latest rendered background plus a version counter.

    Version 0 means nothing has been published yet. Waiters are woken on
    every publish.
    """

    def __init__(self):
        self.version = 0
        self.asset: Optional[RenderedImage] = None
        self._changed = asyncio.Condition()

    def snapshot(self) -> Tuple[int, Optional[RenderedImage]]:
        return self.version, self.asset

    async def publish(self, image: RenderedImage) -> int:
        async with self._changed:
            self.asset = image
            self.version += 1
            self._changed.notify_all()
        return self.version

    async def wait_for_update(self, timeout: float) -> bool:
        """True if a publish happened before the timeout."""
        async with self._changed:
            try:
                await asyncio.wait_for(self._changed.wait(), timeout)
            except asyncio.TimeoutError:
                return False
        return True


def extract_base64_image(value: Any) -> Optional[Tuple[str, Optional[str]]]:
    """Depth-first search for base64 image data; returns (data, mime or None)."""
    if isinstance(value, dict):
        if "inlineData" in value:
            found = extract_base64_image(value["inlineData"])
            if found is not None:
                return found
        for key in BASE64_KEYS:
            data = value.get(key)
            if isinstance(data, str):
                trimmed = data.strip()
                if len(trimmed) > MIN_BASE64_LENGTH and _is_base64(trimmed):
                    mime = value.get("mimeType")
                    return trimmed, mime if isinstance(mime, str) else None
        for item in value.values():
            found = extract_base64_image(item)
            if found is not None:
                return found
        return None
    if isinstance(value, list):
        for item in value:
            found = extract_base64_image(item)
            if found is not None:
                return found
    return None


def _is_base64(text: str) -> bool:
    try:
        base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


class NanoBananaRenderer:
    """Gemini image model; sends the previous background along so edits are incremental."""

    def __init__(self, cfg: ImageConfig, store: BackgroundStore, api_key: Callable[[], Optional[str]]):
        self.cfg = cfg
        self.store = store
        self.api_key = api_key

    def build_request(self, prompt: str) -> dict:
        parts = [{"text": prompt}]
        _, previous = self.store.snapshot()
        if previous is not None:
            parts.append({
                "inlineData": {
                    "mimeType": previous.mime,
                    "data": base64.b64encode(previous.data).decode("ascii"),
                }
            })
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {"imageConfig": {"aspectRatio": self.cfg.aspect_ratio}},
        }

    async def render(self, prompt: str) -> RenderedImage:
        if not prompt.strip():
            raise ValidationError("Prompt must not be empty.")
        key = self.api_key()
        if not key:
            raise ValidationError("Nano banana API key not available.")

        url = f"{self.cfg.endpoint.rstrip('/')}/{self.cfg.model}:generateContent"
        status, body = await post_json(url, self.build_request(prompt),
                                       headers={"X-Goog-Api-Key": key})
        ensure_success(status, body, "Nano banana request")

        found = extract_base64_image(parse_json(body))
        if found is None:
            raise ParseError("Nano banana response did not contain image data.")
        data, mime = found
        try:
            image_bytes = base64.b64decode(data)
        except (binascii.Error, ValueError) as e:
            raise ParseError(f"Failed to decode image data: {e}") from e
        logger.info(f"🖼️ [Background] Received {len(image_bytes)} bytes of {mime or self.cfg.fallback_mime}")
        return RenderedImage(data=image_bytes, mime=mime or self.cfg.fallback_mime)

