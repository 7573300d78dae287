from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest

from backend.app.core.retry import RetryPolicy
from backend.app.db import models
from backend.app.db.session import session_scope
from backend.app.services.image_ingest import (
    ImageIngestionPipeline,
    create_job,
    get_job,
    image_status_stats,
    list_jobs,
)
from backend.app.services.media_store import (
    CloudflareImagesStore,
    ImageTooLargeError,
    LocalMediaStore,
    MAX_IMAGE_BYTES,
)
from backend.app.services.page_fetcher import FetchResult, FetchRetryableError

CDN = "https://naniauto.com/uploads"


class FakeImageFetcher:
    def __init__(self, failing=(), sizes: Dict[str, int] | None = None):
        self.failing = set(failing)
        self.sizes = sizes or {}
        self.calls: Counter = Counter()

    async def fetch(self, url: str) -> FetchResult:
        self.calls[url] += 1
        if url in self.failing:
            raise FetchRetryableError(f"{url} returned 503", url=url, status_code=503)
        return FetchResult(url=url, status_code=200, content=b"\xff" * self.sizes.get(url, 64), headers={})

    async def aclose(self) -> None:
        return None


async def _no_sleep(_: float) -> None:
    return None


def _policy(**kwargs) -> RetryPolicy:
    values = dict(max_attempts=3, base_delay=1.0, multiplier=2.0, give_up_on=(ImageTooLargeError,), sleep=_no_sleep)
    values.update(kwargs)
    return RetryPolicy(**values)


def _pipeline(tmp_path, fetcher, **kwargs) -> ImageIngestionPipeline:
    return ImageIngestionPipeline(LocalMediaStore(tmp_path), fetcher=fetcher, retry_policy=_policy(), **kwargs)


def _seed_vehicle(images, *, vin="2HGFC2F59KH012345", vendor_name="Nani Auto", status="active", age_days=0) -> int:
    with session_scope() as session:
        if session.get(models.Vendor, "naniauto") is None:
            session.add(models.Vendor(id="naniauto", name="Nani Auto", source_type="html", adapter="B_DETAIL"))
            session.flush()
        vehicle = models.Vehicle(
            vendor_id="naniauto",
            vendor_name=vendor_name,
            vin=vin,
            make="Honda",
            model="Civic",
            year=2019,
            images=list(images),
            vendor_status=status,
            created_at=datetime.now(timezone.utc) - timedelta(days=age_days),
        )
        session.add(vehicle)
        session.flush()
        return vehicle.id


def _images(vehicle_id: int):
    with session_scope() as session:
        return session.get(models.Vehicle, vehicle_id).images


@pytest.mark.asyncio
async def test_partial_upload_failure_keeps_original_urls(tmp_path) -> None:
    urls = [f"{CDN}/{i}.jpg" for i in range(5)]
    failing = {urls[1], urls[2], urls[4]}
    vehicle_id = _seed_vehicle(urls)
    fetcher = FakeImageFetcher(failing=failing)

    summary = await _pipeline(tmp_path, fetcher).process_batch(vehicle_ids=[vehicle_id])

    assert summary["status"] == "completed"
    assert summary["images_uploaded"] == 2
    assert summary["images_failed"] == 3
    assert summary["vehicles_processed"] == 1
    assert summary["progress"] == 100.0

    images = _images(vehicle_id)
    assert len(images) == 5
    assert [img for img in images if img.startswith("http")] == [urls[1], urls[2], urls[4]]
    assert images[0].startswith("2HGFC2F59KH012345-") and images[0].endswith("-0")
    assert images[3].startswith("2HGFC2F59KH012345-") and images[3].endswith("-3")
    assert (tmp_path / images[0]).read_bytes() == b"\xff" * 64

    assert all(fetcher.calls[url] == 3 for url in failing)
    assert fetcher.calls[urls[0]] == 1


@pytest.mark.asyncio
async def test_already_migrated_ids_are_left_alone(tmp_path) -> None:
    vehicle_id = _seed_vehicle(["existing-media-id", f"{CDN}/new.jpg"])

    await _pipeline(tmp_path, FakeImageFetcher()).process_batch(vehicle_ids=[vehicle_id])

    images = _images(vehicle_id)
    assert images[0] == "existing-media-id"
    assert not images[1].startswith("http")


@pytest.mark.asyncio
async def test_every_image_failing_still_completes_and_leaves_record(tmp_path) -> None:
    urls = [f"{CDN}/a.jpg", f"{CDN}/b.jpg"]
    vehicle_id = _seed_vehicle(urls)
    with session_scope() as session:
        before = session.get(models.Vehicle, vehicle_id).updated_at

    summary = await _pipeline(tmp_path, FakeImageFetcher(failing=urls)).process_batch(vehicle_ids=[vehicle_id])

    assert summary["status"] == "completed"
    assert (summary["images_uploaded"], summary["images_failed"]) == (0, 2)
    with session_scope() as session:
        vehicle = session.get(models.Vehicle, vehicle_id)
        assert vehicle.images == urls
        assert vehicle.updated_at == before


@pytest.mark.asyncio
async def test_missing_credentials_fail_the_batch(tmp_path) -> None:
    vehicle_id = _seed_vehicle([f"{CDN}/a.jpg"])
    store = CloudflareImagesStore(account_id="", api_token="")
    pipeline = ImageIngestionPipeline(store, fetcher=FakeImageFetcher(), retry_policy=_policy())

    summary = await pipeline.process_batch()
    await store.aclose()

    assert summary["status"] == "failed"
    assert "CF_ACCOUNT_ID" in summary["error"]
    assert _images(vehicle_id) == [f"{CDN}/a.jpg"]


@pytest.mark.asyncio
async def test_oversized_image_is_not_retried(tmp_path) -> None:
    url = f"{CDN}/huge.jpg"
    vehicle_id = _seed_vehicle([url])
    fetcher = FakeImageFetcher(sizes={url: MAX_IMAGE_BYTES + 1})

    summary = await _pipeline(tmp_path, fetcher).process_batch(vehicle_ids=[vehicle_id])

    assert summary["images_failed"] == 1
    assert fetcher.calls[url] == 1
    assert _images(vehicle_id) == [url]


def test_selection_skips_removed_and_fully_migrated(tmp_path) -> None:
    pending_new = _seed_vehicle([f"{CDN}/1.jpg"], vin=None, age_days=0)
    pending_old = _seed_vehicle([f"{CDN}/2.jpg"], vin=None, age_days=3)
    _seed_vehicle([f"{CDN}/3.jpg"], vin=None, status="removed")
    _seed_vehicle(["media-id-1", "https://imagedelivery.net/hash/media-id-2/public"], vin=None)
    _seed_vehicle([f"{CDN}/4.jpg"], vin=None, vendor_name="SLT Autos", age_days=10)

    pipeline = _pipeline(tmp_path, FakeImageFetcher())

    assert [v.id for v in pipeline.select_vehicles(batch_size=5, vendor_name="Nani Auto")] == [pending_new, pending_old]
    assert [v.id for v in pipeline.select_vehicles(batch_size=1)] == [pending_new]
    assert len(pipeline.select_vehicles(batch_size=10)) == 3


@pytest.mark.asyncio
async def test_job_progress_is_tracked_per_vehicle(tmp_path) -> None:
    first = _seed_vehicle([f"{CDN}/1.jpg"], vin=None)
    second = _seed_vehicle([f"{CDN}/2.jpg"], vin=None)
    job_id = create_job("Nani Auto")
    assert get_job(job_id)["status"] == "pending"

    await _pipeline(tmp_path, FakeImageFetcher()).process_batch(vehicle_ids=[first, second], job_id=job_id)

    job = get_job(job_id)
    assert job["status"] == "completed"
    assert (job["total_vehicles"], job["vehicles_processed"], job["images_uploaded"]) == (2, 2, 2)
    assert job["current_vehicle"] is None
    assert job["completed_at"] is not None
    assert [j["job_id"] for j in list_jobs()] == [job_id]


def test_image_status_stats_counts_migration_state() -> None:
    _seed_vehicle([f"{CDN}/1.jpg", f"{CDN}/2.jpg"], vin=None)
    _seed_vehicle(["media-1", f"{CDN}/3.jpg"], vin=None)
    _seed_vehicle(["media-2"], vin=None)
    _seed_vehicle([], vin=None)
    _seed_vehicle([f"{CDN}/4.jpg"], vin=None, status="removed")

    stats = image_status_stats()

    assert stats["total_vehicles"] == 4
    assert stats["with_images"] == 3
    assert stats["needing_processing"] == 2
    assert stats["partially_processed"] == 1
    assert stats["fully_processed"] == 1
    assert stats["external_images"] == 3
    assert stats["migrated_images"] == 2


@pytest.mark.asyncio
async def test_job_is_marked_failed_when_progress_write_breaks(tmp_path) -> None:
    vehicle_id = _seed_vehicle([f"{CDN}/1.jpg"], vin=None)
    pipeline = _pipeline(tmp_path, FakeImageFetcher())
    update_job = pipeline._update_job

    def broken_progress(job_id, **values):
        if "vehicles_processed" in values:
            raise RuntimeError("database went away")
        update_job(job_id, **values)

    pipeline._update_job = broken_progress

    summary = await pipeline.process_batch(vehicle_ids=[vehicle_id])

    assert summary["status"] == "failed"
    assert summary["error"] == "database went away"
    assert summary["completed_at"] is not None
    assert summary["current_vehicle"] is None


@pytest.mark.asyncio
async def test_failing_vehicle_does_not_starve_older_ones(tmp_path) -> None:
    dead_url = f"{CDN}/gone.jpg"
    stuck = _seed_vehicle([dead_url], vin=None, age_days=0)
    older = _seed_vehicle([f"{CDN}/ok.jpg"], vin=None, age_days=5)
    pipeline = _pipeline(tmp_path, FakeImageFetcher(failing={dead_url}))

    first = await pipeline.process_batch(batch_size=1)
    second = await pipeline.process_batch(batch_size=1)

    assert [v["vehicle_id"] for v in first["vehicles"]] == [stuck]
    assert [v["vehicle_id"] for v in second["vehicles"]] == [older]
    assert not _images(older)[0].startswith("http")
    assert [v.id for v in pipeline.select_vehicles(batch_size=5)] == [stuck]
