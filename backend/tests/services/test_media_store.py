from __future__ import annotations

import json

import httpx
import pytest

from backend.app.services.media_store import (
    CloudflareImagesStore,
    ImageTooLargeError,
    LocalMediaStore,
    MAX_IMAGE_BYTES,
    MediaStoreConfigError,
    MediaStoreError,
    build_image_id,
    is_external_image,
    is_media_id,
    sanitize_image_id,
)


def _store(handler) -> CloudflareImagesStore:
    return CloudflareImagesStore("acct-1", "token-1", transport=httpx.MockTransport(handler))


def test_image_ids_are_sanitized_and_bounded() -> None:
    assert sanitize_image_id("ABC 123/x_y.jpg") == "ABC-123-x-y-jpg"
    assert len(sanitize_image_id("a" * 150)) == 100
    assert build_image_id("NMTKHMBX5JR012345", 2, 1700000000000) == "NMTKHMBX5JR012345-1700000000000-2"


def test_external_and_media_references_are_told_apart() -> None:
    assert is_external_image("https://naniauto.com/uploads/1.jpg")
    assert is_external_image("http://example.com/a.png")
    assert not is_external_image("https://imagedelivery.net/hash/abc/public")
    assert not is_external_image("NMTKHMBX5JR012345-1700000000000-0")
    assert not is_external_image("")
    assert not is_external_image(None)

    assert is_media_id("NMTKHMBX5JR012345-1700000000000-0")
    assert is_media_id("https://imagedelivery.net/hash/abc/public")
    assert not is_media_id("https://naniauto.com/uploads/1.jpg")
    assert not is_media_id("has space")


@pytest.mark.asyncio
async def test_cloudflare_upload_posts_multipart_with_token() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = request.content
        return httpx.Response(200, json={"success": True, "result": {"id": "veh-1-0"}, "errors": []})

    store = _store(handler)
    image_id = await store.upload(b"jpegbytes", "veh 1-0", {"originalUrl": "https://x/1.jpg"})
    await store.aclose()

    assert image_id == "veh-1-0"
    assert seen["url"] == "https://api.cloudflare.com/client/v4/accounts/acct-1/images/v1"
    assert seen["auth"] == "Bearer token-1"
    assert b'name="id"' in seen["body"]
    assert b"veh-1-0" in seen["body"]
    assert json.dumps({"originalUrl": "https://x/1.jpg"}).encode() in seen["body"]
    assert b"jpegbytes" in seen["body"]


@pytest.mark.asyncio
async def test_cloudflare_duplicate_id_counts_as_uploaded() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            409,
            json={"success": False, "errors": [{"code": 5409, "message": "Resource already exists"}]},
        )

    store = _store(handler)
    assert await store.upload(b"x", "veh-1-0", {}) == "veh-1-0"
    await store.aclose()


@pytest.mark.asyncio
async def test_cloudflare_errors_are_typed() -> None:
    def unauthorized(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]})

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    store = _store(unauthorized)
    with pytest.raises(MediaStoreConfigError):
        await store.upload(b"x", "veh-1-0", {})
    await store.aclose()

    store = _store(broken)
    with pytest.raises(MediaStoreError, match="500"):
        await store.upload(b"x", "veh-1-0", {})
    await store.aclose()


@pytest.mark.asyncio
async def test_cloudflare_without_credentials_is_not_ready() -> None:
    store = CloudflareImagesStore("", "", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(MediaStoreConfigError):
        store.ensure_ready()
    await store.aclose()


@pytest.mark.asyncio
async def test_oversized_images_are_rejected_before_upload(tmp_path) -> None:
    store = LocalMediaStore(tmp_path)
    with pytest.raises(ImageTooLargeError):
        await store.upload(b"\0" * (MAX_IMAGE_BYTES + 1), "big", {})
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_local_store_writes_bytes_and_metadata(tmp_path) -> None:
    store = LocalMediaStore(tmp_path)
    image_id = await store.upload(b"png", "veh/1", {"source": "vendor"})

    assert image_id == "veh-1"
    assert (tmp_path / "veh-1").read_bytes() == b"png"
    assert json.loads((tmp_path / "veh-1.json").read_text()) == {"source": "vendor"}
