from __future__ import annotations

import asyncio
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from backend.app.core.log import get_logger
from backend.app.core.settings import settings

logger = get_logger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_IMAGE_ID_LENGTH = 100
CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"
DUPLICATE_ID_CODE = 5409

_ID_UNSAFE_RE = re.compile(r"[^A-Za-z0-9-]")
_MEDIA_ID_RE = re.compile(r"^[A-Za-z0-9-]{1,100}$")


class MediaStoreError(Exception):
    """Upload to the media store failed."""


class MediaStoreConfigError(MediaStoreError):
    """The media store is missing credentials or a writable root."""


class ImageTooLargeError(MediaStoreError):
    def __init__(self, size: int, limit: int = MAX_IMAGE_BYTES):
        super().__init__(f"image is {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


def sanitize_image_id(value: str) -> str:
    return _ID_UNSAFE_RE.sub("-", value)[:MAX_IMAGE_ID_LENGTH]


def build_image_id(vehicle_key: str, index: int, stamp_ms: Optional[int] = None) -> str:
    stamp = stamp_ms if stamp_ms is not None else int(time.time() * 1000)
    return sanitize_image_id(f"{vehicle_key}-{stamp}-{index}")


def _is_delivery_url(parsed) -> bool:
    host = (parsed.hostname or "").lower()
    delivery = settings.media_delivery_host.lower()
    return host == delivery or host.endswith("." + delivery)


def is_external_image(value: Any) -> bool:
    """True for an http(s) URL that still points at the vendor's servers."""
    if not isinstance(value, str) or not value:
        return False
    parsed = urlparse(value.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    return not _is_delivery_url(parsed)


def is_media_id(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    if _MEDIA_ID_RE.match(value):
        return True
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and _is_delivery_url(parsed)


class MediaStore:
    def ensure_ready(self) -> None:
        """Raise MediaStoreConfigError when uploads cannot possibly succeed."""

    async def upload(self, content: bytes, image_id: str, metadata: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    @staticmethod
    def check_size(content: bytes) -> None:
        if len(content) > MAX_IMAGE_BYTES:
            raise ImageTooLargeError(len(content))


class CloudflareImagesStore(MediaStore):
    """Uploads to Cloudflare Images; the stored reference is the image id."""

    def __init__(
        self,
        account_id: Optional[str] = None,
        api_token: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.account_id = account_id if account_id is not None else settings.cf_account_id
        self.api_token = api_token if api_token is not None else settings.cf_images_token
        self._client = httpx.AsyncClient(timeout=timeout or settings.http_timeout, transport=transport)

    @property
    def endpoint(self) -> str:
        return f"{CLOUDFLARE_API}/accounts/{self.account_id}/images/v1"

    def ensure_ready(self) -> None:
        if not self.account_id or not self.api_token:
            raise MediaStoreConfigError("CF_ACCOUNT_ID and CF_IMAGES_TOKEN must be set to upload images")

    async def upload(self, content: bytes, image_id: str, metadata: Dict[str, Any]) -> str:
        self.ensure_ready()
        self.check_size(content)
        image_id = sanitize_image_id(image_id)
        try:
            response = await self._client.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {self.api_token}"},
                data={"id": image_id, "metadata": json.dumps(metadata)},
                files={"file": (image_id, content)},
            )
        except httpx.HTTPError as exc:
            raise MediaStoreError(f"upload of {image_id} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.is_success and payload.get("success"):
            result = payload.get("result") or {}
            return result.get("id") or image_id

        errors = payload.get("errors") or []
        if any(err.get("code") == DUPLICATE_ID_CODE for err in errors if isinstance(err, dict)):
            logger.info("image %s already uploaded", image_id)
            return image_id
        if response.status_code in (401, 403):
            raise MediaStoreConfigError(f"Cloudflare rejected the API token ({response.status_code})")
        message = "; ".join(str(err.get("message", err)) for err in errors if isinstance(err, dict))
        raise MediaStoreError(f"upload of {image_id} returned {response.status_code}: {message or response.text[:200]}")

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalMediaStore(MediaStore):
    """Filesystem-backed media store for development and tests."""

    def __init__(self, root: Optional[str | Path] = None):
        self.root = Path(root or settings.local_media_root or Path.cwd() / "data" / "media")
        self.root.mkdir(parents=True, exist_ok=True)

    async def upload(self, content: bytes, image_id: str, metadata: Dict[str, Any]) -> str:
        self.check_size(content)
        image_id = sanitize_image_id(image_id)
        path = self.root / image_id
        await asyncio.to_thread(path.write_bytes, content)
        await asyncio.to_thread(
            path.with_suffix(".json").write_text, json.dumps(metadata), encoding="utf-8"
        )
        return image_id


def build_media_store() -> MediaStore:
    if settings.local_media_root:
        return LocalMediaStore(settings.local_media_root)
    return CloudflareImagesStore()
