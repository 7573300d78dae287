from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Union

import pytest
from sqlalchemy import select

from backend.app.db import models
from backend.app.db.session import session_scope
from backend.app.services.crawl_orchestrator import CrawlOrchestrator, SyncInProgressError, list_runs, vendor_stats
from backend.app.services.page_fetcher import FetchNotFoundError, FetchRetryableError, FetchResult
from backend.app.services.vendor_config import VendorConfig, upsert_vendor_configs

FIXTURES = Path(__file__).resolve().parents[1] / "parsers" / "fixtures"
BASE = "https://www.automobile-lambert.com"
CHR_URL = f"{BASE}/cars/2018-toyota-c-hr/"
CIVIC_URL = f"{BASE}/cars/2020-honda-civic-ex/"


def _page(n: int) -> str:
    return f"{BASE}/cars/?paged={n}&cars_pp=20"


def _fixture(path: str) -> str:
    return (FIXTURES / path).read_text(encoding="utf-8")


def _civic_detail() -> str:
    return (
        _fixture("wp_car_dealer/detail_page.html")
        .replace("NMTKHMBX5JR012345", "2HGFC2F59LH012345")
        .replace("2018 Toyota C-HR XLE", "2020 Honda Civic EX")
        .replace("L2345", "L9876")
    )


class FakeFetcher:
    def __init__(self, pages: Dict[str, Union[str, Exception]], delays: Dict[str, float] | None = None):
        self.pages = pages
        self.delays = delays or {}
        self.requested: List[str] = []

    async def fetch(self, url: str) -> FetchResult:
        self.requested.append(url)
        if url in self.delays:
            await asyncio.sleep(self.delays[url])
        page = self.pages.get(url)
        if page is None:
            raise FetchNotFoundError(f"{url} returned 404", url=url, status_code=404)
        if isinstance(page, Exception):
            raise page
        return FetchResult(url=url, status_code=200, content=page.encode("utf-8"), headers={})

    async def fetch_text(self, url: str) -> str:
        return (await self.fetch(url)).text

    async def aclose(self) -> None:
        return None


async def _no_sleep(_: float) -> None:
    return None


def _vendor(**overrides) -> VendorConfig:
    values = {
        "vendor_id": "lambert",
        "name": "Automobile Lambert",
        "adapter": "WP_CAR_DEALER",
        "base_url": BASE,
        "request_delay_min": 0,
        "request_delay_max": 0,
    }
    values.update(overrides)
    config = VendorConfig(**values)
    upsert_vendor_configs([config])
    return config


def _orchestrator(pages, **kwargs) -> CrawlOrchestrator:
    return CrawlOrchestrator(FakeFetcher(pages, kwargs.pop("delays", None)), sleep=_no_sleep, **kwargs)


def _full_site() -> Dict[str, Union[str, Exception]]:
    listing = _fixture("wp_car_dealer/listing_page.html")
    return {
        _page(1): listing,
        _page(2): listing,
        CHR_URL: _fixture("wp_car_dealer/detail_page.html"),
        CIVIC_URL: _civic_detail(),
    }


def _seed_vehicle(vin: str = "1FMCU9GD5HUA99999") -> int:
    with session_scope() as session:
        vehicle = models.Vehicle(
            vendor_id="lambert",
            vin=vin,
            make="Ford",
            model="Escape",
            year=2017,
            images=[],
            vendor_status="active",
            last_seen_from_vendor=datetime.now(timezone.utc) - timedelta(days=1),
        )
        session.add(vehicle)
        session.flush()
        return vehicle.id


def _vehicle(vehicle_id: int) -> models.Vehicle:
    with session_scope() as session:
        return session.get(models.Vehicle, vehicle_id)


def _runs() -> List[models.SyncRunLog]:
    with session_scope() as session:
        return session.execute(select(models.SyncRunLog)).scalars().all()


@pytest.mark.asyncio
async def test_run_crawls_paginates_and_reconciles() -> None:
    vendor = _vendor()
    orchestrator = _orchestrator(_full_site())

    summary = await orchestrator.run(vendor)

    assert summary["status"] == "success"
    assert summary["pages_fetched"] == 2
    assert summary["new_vehicles"] == 2
    assert summary["vehicles_found"] == 2
    assert orchestrator.fetcher.requested == [_page(1), _page(2), CHR_URL, CIVIC_URL]

    runs = _runs()
    assert len(runs) == 1
    assert runs[0].status == "success"
    assert runs[0].new_vehicles == 2

    with session_scope() as session:
        vendor_row = session.get(models.Vendor, "lambert")
        assert vendor_row.sync_in_progress is False
        assert vendor_row.last_synced_at is not None


@pytest.mark.asyncio
async def test_detail_failure_downgrades_to_partial() -> None:
    vendor = _vendor()
    site = _full_site()
    site[CIVIC_URL] = FetchRetryableError("timed out", url=CIVIC_URL)

    summary = await _orchestrator(site).run(vendor)

    assert summary["status"] == "partial"
    assert summary["new_vehicles"] == 1
    assert summary["errors"][0]["stage"] == "detail_page"
    assert _runs()[0].errors[0]["source_url"] == CIVIC_URL


@pytest.mark.asyncio
async def test_unreachable_first_page_fails_without_unlisting() -> None:
    vendor = _vendor()
    existing = _seed_vehicle()

    summary = await _orchestrator({_page(1): FetchRetryableError("503", url=_page(1), status_code=503)}).run(vendor)

    assert summary["status"] == "failed"
    assert "first listing page" in summary["error_message"]
    assert _vehicle(existing).vendor_status == "active"
    assert [run.status for run in _runs()] == ["failed"]
    with session_scope() as session:
        vendor_row = session.get(models.Vendor, "lambert")
        assert vendor_row.sync_in_progress is False
        assert vendor_row.last_synced_at is None


@pytest.mark.asyncio
async def test_zero_listings_is_failed_and_keeps_inventory() -> None:
    vendor = _vendor()
    existing = _seed_vehicle()

    summary = await _orchestrator({_page(1): "<html><body>Aucun véhicule</body></html>"}).run(vendor)

    assert summary["status"] == "failed"
    assert summary["vehicles_found"] == 0
    assert _vehicle(existing).vendor_status == "active"


@pytest.mark.asyncio
async def test_three_consecutive_page_failures_end_pagination() -> None:
    vendor = _vendor(max_pages=10)
    site = _full_site()
    site[_page(2)] = FetchRetryableError("502", url=_page(2), status_code=502)
    site[_page(3)] = FetchRetryableError("502", url=_page(3), status_code=502)
    site[_page(4)] = FetchRetryableError("502", url=_page(4), status_code=502)
    site[_page(5)] = _fixture("wp_car_dealer/listing_page.html")
    orchestrator = _orchestrator(site)

    summary = await orchestrator.run(vendor)

    assert _page(5) not in orchestrator.fetcher.requested
    assert summary["status"] == "partial"
    assert summary["new_vehicles"] == 2


@pytest.mark.asyncio
async def test_not_found_past_first_page_ends_pagination_quietly() -> None:
    vendor = _vendor()
    site = _full_site()
    del site[_page(2)]

    summary = await _orchestrator(site).run(vendor)

    assert summary["status"] == "success"
    assert summary["pages_fetched"] == 1


@pytest.mark.asyncio
async def test_overlapping_run_is_rejected() -> None:
    vendor = _vendor()
    with session_scope() as session:
        row = session.get(models.Vendor, "lambert")
        row.sync_in_progress = True
        row.sync_started_at = datetime.now(timezone.utc)

    with pytest.raises(SyncInProgressError):
        await _orchestrator(_full_site()).run(vendor)

    assert _runs() == []


@pytest.mark.asyncio
async def test_stale_lock_is_taken_over() -> None:
    vendor = _vendor()
    with session_scope() as session:
        row = session.get(models.Vendor, "lambert")
        row.sync_in_progress = True
        row.sync_started_at = datetime.now(timezone.utc) - timedelta(hours=5)

    summary = await _orchestrator(_full_site()).run(vendor)

    assert summary["status"] == "success"


@pytest.mark.asyncio
async def test_crawl_timeout_keeps_partial_results_and_skips_unlisting() -> None:
    vendor = _vendor(crawl_timeout_seconds=0.3)
    existing = _seed_vehicle()

    summary = await _orchestrator(_full_site(), delays={CIVIC_URL: 5}).run(vendor)

    assert summary["timed_out"] is True
    assert summary["status"] == "partial"
    assert summary["new_vehicles"] == 1
    assert _vehicle(existing).vendor_status == "active"


@pytest.mark.asyncio
async def test_notifier_receives_new_vehicles() -> None:
    vendor = _vendor()
    messages = []

    await _orchestrator(_full_site(), notifier=messages.append).run(vendor)

    assert len(messages) == 1
    assert messages[0]["status"] == "success"
    assert {item["title"] for item in messages[0]["new_listings"]} == {"2018 Toyota C-HR XLE", "2020 Honda Civic EX"}
    assert "2 new vehicle(s)" in messages[0]["subject"]


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_the_run() -> None:
    vendor = _vendor()

    def broken_notifier(message):
        raise RuntimeError("smtp down")

    summary = await _orchestrator(_full_site(), notifier=broken_notifier).run(vendor)

    assert summary["status"] == "success"


@pytest.mark.asyncio
async def test_feed_vendor_runs_single_request() -> None:
    feed_url = "https://feeds.example.com/inventory.json"
    vendor = _vendor(
        vendor_id="example-feed",
        name="Example Feed Partner",
        source_type="feed",
        adapter="FEED_JSON",
        base_url="https://feeds.example.com",
        feed_url=feed_url,
    )

    summary = await _orchestrator({feed_url: _fixture("feeds/inventory.json")}).run(vendor)

    assert summary["status"] == "success"
    assert summary["listings_skipped"] == 2
    assert summary["new_vehicles"] == 2


@pytest.mark.asyncio
async def test_runs_and_vendor_stats_reporting() -> None:
    vendor = _vendor()
    await _orchestrator(_full_site()).run(vendor)

    runs = list_runs("lambert")
    assert len(runs) == 1
    assert runs[0]["new_vehicles"] == 2

    stats = {row["vendor_id"]: row for row in vendor_stats()}
    assert stats["lambert"]["active_vehicles"] == 2
    assert stats["lambert"]["sold_vehicles"] == 0
    assert stats["lambert"]["last_synced_at"] is not None
