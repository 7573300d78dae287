from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import func, or_, select, update

from backend.app.core.log import get_logger
from backend.app.core.rate_limit import PolitenessPacer
from backend.app.core.settings import settings
from backend.app.db import models
from backend.app.db.session import SessionFactory, session_scope
from backend.app.parsers._listing_common import (
    FeedSourceAdapter,
    HtmlSourceAdapter,
    RawListing,
    SourceParseError,
)
from backend.app.parsers.registry import get_adapter, is_feed_adapter
from backend.app.services.page_fetcher import FetchError, FetchNotFoundError, PageFetcher
from backend.app.services.reconcile import ReconcileOutcome, ReconciliationEngine
from backend.app.services.status import ACTIVE, REMOVED, UNLISTED, ensure_utc
from backend.app.services.vendor_config import VendorConfig, VendorConfigError, get_vendor_config

logger = get_logger(__name__)

MAX_CONSECUTIVE_PAGE_FAILURES = 3
MAX_STORED_ERRORS = 100

RUNNING = "running"
SUCCESS = "success"
PARTIAL = "partial"
FAILED = "failed"

Notifier = Callable[[Dict[str, Any]], Any]


class SyncInProgressError(Exception):
    """Another run holds the vendor's sync lock."""

    def __init__(self, vendor_id: str, started_at: Optional[datetime] = None):
        since = f" since {started_at.isoformat()}" if started_at else ""
        super().__init__(f"sync already in progress for vendor {vendor_id}{since}")
        self.vendor_id = vendor_id
        self.started_at = started_at


class CrawlAbortedError(Exception):
    """The crawl could not start, e.g. the first listing page or the feed is unreachable."""


@dataclass
class CrawlResult:
    listings: List[RawListing] = field(default_factory=list)
    pages_fetched: int = 0
    links_found: int = 0
    skipped: int = 0
    timed_out: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(self, stage: str, url: Optional[str], exc: BaseException) -> None:
        logger.warning("%s failed for %s: %s", stage, url or "-", exc)
        self.errors.append({"stage": stage, "source_url": url, "error": str(exc)})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CrawlOrchestrator:
    """Runs one vendor sync: lock, crawl, reconcile, log.

    Pages and detail pages of a vendor are fetched one after another with a
    randomized politeness gap. Every attempt that gets past the lock writes
    exactly one sync_run_logs row.
    """

    def __init__(
        self,
        fetcher: Optional[PageFetcher] = None,
        *,
        engine: Optional[ReconciliationEngine] = None,
        notifier: Optional[Notifier] = None,
        session_factory: Optional[SessionFactory] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.fetcher = fetcher or PageFetcher()
        self.session_factory = session_factory or session_scope
        self.engine = engine or ReconciliationEngine(self.session_factory)
        self.notifier = notifier
        self._sleep = sleep

    async def aclose(self) -> None:
        await self.fetcher.aclose()

    async def run(self, vendor: VendorConfig) -> Dict[str, Any]:
        started_at = _now()
        self._acquire_lock(vendor.vendor_id, started_at)
        status = FAILED
        try:
            run_id = self._create_run(vendor, started_at)
            summary = await self._run_locked(vendor, run_id, started_at)
            status = summary["status"]
            return summary
        finally:
            self._release_lock(vendor.vendor_id, synced=status != FAILED)

    async def _run_locked(self, vendor: VendorConfig, run_id: int, started_at: datetime) -> Dict[str, Any]:
        crawl = CrawlResult()
        outcome: Optional[ReconcileOutcome] = None
        error_message: Optional[str] = None

        try:
            await self._crawl_with_timeout(vendor, crawl)
        except CrawlAbortedError as exc:
            error_message = str(exc)
            logger.error("vendor %s crawl aborted: %s", vendor.vendor_id, exc)
        except Exception as exc:
            error_message = f"crawl failed: {exc}"
            logger.exception("vendor %s crawl failed", vendor.vendor_id)

        if error_message is None and not crawl.listings:
            error_message = "crawl returned no listings; lifecycle changes skipped"
            logger.error("vendor %s: %s", vendor.vendor_id, error_message)

        if error_message is None:
            try:
                outcome = self.engine.reconcile(
                    vendor,
                    crawl.listings,
                    _now(),
                    sync_run_id=run_id,
                    apply_missing=not crawl.timed_out,
                )
            except Exception as exc:
                error_message = f"reconciliation could not start: {exc}"
                logger.exception("vendor %s reconciliation failed", vendor.vendor_id)

        errors = list(crawl.errors) + (list(outcome.errors) if outcome else [])
        if error_message is not None:
            status = FAILED
        elif errors:
            status = PARTIAL
        else:
            status = SUCCESS

        completed_at = _now()
        summary = {
            "run_id": run_id,
            "vendor_id": vendor.vendor_id,
            "vendor_name": vendor.name,
            "status": status,
            "started_at": started_at.isoformat(),
            "completed_at": completed_at.isoformat(),
            "duration_seconds": round((completed_at - started_at).total_seconds(), 3),
            "pages_fetched": crawl.pages_fetched,
            "links_found": crawl.links_found,
            "listings_skipped": crawl.skipped,
            "timed_out": crawl.timed_out,
            "vehicles_found": outcome.found if outcome else 0,
            "new_vehicles": outcome.new if outcome else 0,
            "updated_vehicles": outcome.updated if outcome else 0,
            "unchanged_vehicles": outcome.unchanged if outcome else 0,
            "unlisted_vehicles": outcome.unlisted if outcome else 0,
            "removed_vehicles": outcome.removed if outcome else 0,
            "error_message": error_message,
            "errors": errors,
        }
        self._finalize_run(run_id, summary, completed_at)
        logger.info(
            "vendor %s sync %s: found=%s new=%s updated=%s unlisted=%s removed=%s errors=%s",
            vendor.vendor_id,
            status,
            summary["vehicles_found"],
            summary["new_vehicles"],
            summary["updated_vehicles"],
            summary["unlisted_vehicles"],
            summary["removed_vehicles"],
            len(errors),
        )
        self._notify(summary, outcome)
        return summary

    async def _crawl_with_timeout(self, vendor: VendorConfig, crawl: CrawlResult) -> None:
        if not vendor.crawl_timeout_seconds:
            await self._crawl(vendor, crawl)
            return
        try:
            await asyncio.wait_for(self._crawl(vendor, crawl), timeout=vendor.crawl_timeout_seconds)
        except asyncio.TimeoutError:
            crawl.timed_out = True
            crawl.errors.append(
                {
                    "stage": "crawl",
                    "source_url": None,
                    "error": f"crawl exceeded {vendor.crawl_timeout_seconds}s; missing-vehicle checks skipped",
                }
            )
            logger.warning("vendor %s crawl timed out after %ss", vendor.vendor_id, vendor.crawl_timeout_seconds)

    async def _crawl(self, vendor: VendorConfig, crawl: CrawlResult) -> None:
        adapter = get_adapter(vendor.adapter)
        if is_feed_adapter(vendor.adapter):
            await self._crawl_feed(vendor, adapter, crawl)
        else:
            pacer = PolitenessPacer(vendor.request_delay_min, vendor.request_delay_max, sleep=self._sleep)
            links = await self._collect_links(vendor, adapter, pacer, crawl)
            await self._collect_listings(vendor, adapter, pacer, links, crawl)

    async def _crawl_feed(self, vendor: VendorConfig, adapter: FeedSourceAdapter, crawl: CrawlResult) -> None:
        try:
            body = await self.fetcher.fetch_text(vendor.feed_url)
        except FetchError as exc:
            raise CrawlAbortedError(f"feed {vendor.feed_url} unreachable: {exc}") from exc
        crawl.pages_fetched = 1
        try:
            parsed = adapter.parse_feed(body, vendor)
        except SourceParseError as exc:
            raise CrawlAbortedError(f"feed {vendor.feed_url} could not be parsed: {exc}") from exc
        crawl.listings.extend(parsed.listings)
        crawl.skipped += parsed.skipped

    async def _collect_links(
        self,
        vendor: VendorConfig,
        adapter: HtmlSourceAdapter,
        pacer: PolitenessPacer,
        crawl: CrawlResult,
    ) -> List[str]:
        links: List[str] = []
        seen: set[str] = set()
        failures = 0
        for page in range(1, vendor.max_pages + 1):
            url = adapter.listing_url(vendor, page)
            await pacer.acquire()
            try:
                html = await self.fetcher.fetch_text(url)
            except FetchNotFoundError as exc:
                if page == 1:
                    raise CrawlAbortedError(f"first listing page {url} not found") from exc
                logger.info("vendor %s: page %s not found, pagination ends", vendor.vendor_id, page)
                break
            except FetchError as exc:
                if page == 1:
                    raise CrawlAbortedError(f"first listing page {url} unreachable: {exc}") from exc
                crawl.add_error("listing_page", url, exc)
                failures += 1
                if failures >= MAX_CONSECUTIVE_PAGE_FAILURES:
                    logger.warning("vendor %s: %s consecutive page failures, pagination ends", vendor.vendor_id, failures)
                    break
                continue

            failures = 0
            crawl.pages_fetched += 1
            fresh = [link for link in adapter.extract_detail_links(html, vendor) if link not in seen]
            if not fresh:
                break
            seen.update(fresh)
            links.extend(fresh)

        crawl.links_found = len(links)
        logger.info("vendor %s: %s detail links over %s pages", vendor.vendor_id, len(links), crawl.pages_fetched)
        return links

    async def _collect_listings(
        self,
        vendor: VendorConfig,
        adapter: HtmlSourceAdapter,
        pacer: PolitenessPacer,
        links: List[str],
        crawl: CrawlResult,
    ) -> None:
        for link in links:
            await pacer.acquire()
            try:
                html = await self.fetcher.fetch_text(link)
            except FetchError as exc:
                crawl.add_error("detail_page", link, exc)
                continue
            try:
                listing = adapter.parse_detail(html, link, vendor)
            except Exception as exc:
                crawl.add_error("parse", link, exc)
                continue
            if listing is None:
                crawl.skipped += 1
                logger.info("vendor %s: skipped incomplete listing %s", vendor.vendor_id, link)
                continue
            crawl.listings.append(listing)

    def _acquire_lock(self, vendor_id: str, now: datetime) -> None:
        stale_before = now - timedelta(minutes=settings.sync_lock_stale_minutes)
        with self.session_factory() as session:
            result = session.execute(
                update(models.Vendor)
                .where(
                    models.Vendor.id == vendor_id,
                    or_(
                        models.Vendor.sync_in_progress.is_(False),
                        models.Vendor.sync_started_at.is_(None),
                        models.Vendor.sync_started_at < stale_before,
                    ),
                )
                .values(sync_in_progress=True, sync_started_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return
            vendor = session.get(models.Vendor, vendor_id)
            held_since = ensure_utc(vendor.sync_started_at) if vendor else None
        if vendor is None:
            raise VendorConfigError(f"unknown vendor {vendor_id}")
        raise SyncInProgressError(vendor_id, held_since)

    def _release_lock(self, vendor_id: str, *, synced: bool) -> None:
        values: Dict[str, Any] = {"sync_in_progress": False, "sync_started_at": None}
        if synced:
            values["last_synced_at"] = _now()
        with self.session_factory() as session:
            session.execute(
                update(models.Vendor)
                .where(models.Vendor.id == vendor_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    def _create_run(self, vendor: VendorConfig, started_at: datetime) -> int:
        with self.session_factory() as session:
            run = models.SyncRunLog(
                vendor_id=vendor.vendor_id,
                vendor_name=vendor.name,
                started_at=started_at,
                status=RUNNING,
            )
            session.add(run)
            session.flush()
            return run.id

    def _finalize_run(self, run_id: int, summary: Dict[str, Any], completed_at: datetime) -> None:
        with self.session_factory() as session:
            run = session.get(models.SyncRunLog, run_id)
            if run is None:
                raise LookupError(f"sync run {run_id} disappeared")
            run.completed_at = completed_at
            run.duration_seconds = summary["duration_seconds"]
            run.status = summary["status"]
            run.vehicles_found = summary["vehicles_found"]
            run.new_vehicles = summary["new_vehicles"]
            run.updated_vehicles = summary["updated_vehicles"]
            run.unchanged_vehicles = summary["unchanged_vehicles"]
            run.unlisted_vehicles = summary["unlisted_vehicles"]
            run.removed_vehicles = summary["removed_vehicles"]
            run.pages_fetched = summary["pages_fetched"]
            run.error_message = summary["error_message"]
            run.errors = summary["errors"][:MAX_STORED_ERRORS]

    def _notify(self, summary: Dict[str, Any], outcome: Optional[ReconcileOutcome]) -> None:
        if self.notifier is None:
            return
        if not summary["new_vehicles"] and not summary["errors"] and summary["status"] != FAILED:
            return
        message = build_notification(summary, self._new_listing_rows(outcome))
        try:
            self.notifier(message)
        except Exception as exc:
            logger.error("notifier failed for vendor %s run %s: %s", summary["vendor_id"], summary["run_id"], exc)

    def _new_listing_rows(self, outcome: Optional[ReconcileOutcome]) -> List[Dict[str, Any]]:
        if not outcome or not outcome.new_vehicle_ids:
            return []
        with self.session_factory() as session:
            rows = session.execute(
                select(models.Vehicle).where(models.Vehicle.id.in_(outcome.new_vehicle_ids)).order_by(models.Vehicle.id)
            ).scalars()
            return [
                {
                    "vehicle_id": row.id,
                    "title": f"{row.year} {row.make} {row.model}",
                    "price": float(row.price) if row.price is not None else None,
                    "url": row.vendor_url,
                }
                for row in rows
            ]


def build_notification(summary: Dict[str, Any], new_listings: List[Dict[str, Any]]) -> Dict[str, Any]:
    vendor = summary["vendor_name"] or summary["vendor_id"]
    subject = f"{vendor}: {summary['new_vehicles']} new vehicle(s), sync {summary['status']}"
    lines = [
        subject,
        f"found={summary['vehicles_found']} updated={summary['updated_vehicles']} "
        f"unlisted={summary['unlisted_vehicles']} removed={summary['removed_vehicles']}",
    ]
    for item in new_listings:
        price = f"${item['price']:,.0f}" if item["price"] is not None else "n/a"
        lines.append(f"  + {item['title']} ({price}) {item['url'] or ''}".rstrip())
    if summary["error_message"]:
        lines.append(f"error: {summary['error_message']}")
    if summary["errors"]:
        lines.append(f"{len(summary['errors'])} error(s) during sync")
    return {
        "vendor_id": summary["vendor_id"],
        "run_id": summary["run_id"],
        "status": summary["status"],
        "subject": subject,
        "body": "\n".join(lines),
        "new_listings": new_listings,
        "error_count": len(summary["errors"]),
    }


async def run_vendor(vendor_id: str, *, notifier: Optional[Notifier] = None) -> Dict[str, Any]:
    config = get_vendor_config(vendor_id)
    orchestrator = CrawlOrchestrator(notifier=notifier)
    try:
        return await orchestrator.run(config)
    finally:
        await orchestrator.aclose()


def list_runs(vendor_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    with session_scope() as session:
        stmt = select(models.SyncRunLog).order_by(models.SyncRunLog.started_at.desc(), models.SyncRunLog.id.desc())
        if vendor_id:
            stmt = stmt.where(models.SyncRunLog.vendor_id == vendor_id)
        return [
            {
                "run_id": run.id,
                "vendor_id": run.vendor_id,
                "vendor_name": run.vendor_name,
                "status": run.status,
                "started_at": ensure_utc(run.started_at).isoformat() if run.started_at else None,
                "completed_at": ensure_utc(run.completed_at).isoformat() if run.completed_at else None,
                "duration_seconds": run.duration_seconds,
                "vehicles_found": run.vehicles_found,
                "new_vehicles": run.new_vehicles,
                "updated_vehicles": run.updated_vehicles,
                "unchanged_vehicles": run.unchanged_vehicles,
                "unlisted_vehicles": run.unlisted_vehicles,
                "removed_vehicles": run.removed_vehicles,
                "pages_fetched": run.pages_fetched,
                "error_message": run.error_message,
                "error_count": len(run.errors or []),
            }
            for run in session.execute(stmt.limit(limit)).scalars()
        ]


def vendor_stats() -> List[Dict[str, Any]]:
    """Per-vendor vehicle counts by lifecycle state plus the last sync time."""
    with session_scope() as session:
        vendors = session.execute(select(models.Vendor).order_by(models.Vendor.id)).scalars().all()
        counts = session.execute(
            select(
                models.Vehicle.vendor_id,
                models.Vehicle.vendor_status,
                models.Vehicle.is_sold,
                func.count(models.Vehicle.id),
            ).group_by(models.Vehicle.vendor_id, models.Vehicle.vendor_status, models.Vehicle.is_sold)
        ).all()

        by_vendor: Dict[str, Dict[str, int]] = {}
        for vendor_id, vendor_status, is_sold, count in counts:
            bucket = by_vendor.setdefault(vendor_id, {"total": 0, ACTIVE: 0, UNLISTED: 0, REMOVED: 0, "sold": 0})
            bucket["total"] += count
            if is_sold:
                bucket["sold"] += count
            elif vendor_status in (ACTIVE, UNLISTED, REMOVED):
                bucket[vendor_status] += count

        stats = []
        for vendor in vendors:
            bucket = by_vendor.get(vendor.id, {"total": 0, ACTIVE: 0, UNLISTED: 0, REMOVED: 0, "sold": 0})
            stats.append(
                {
                    "vendor_id": vendor.id,
                    "vendor_name": vendor.name,
                    "adapter": vendor.adapter,
                    "is_active": vendor.is_active is not False,
                    "sync_in_progress": bool(vendor.sync_in_progress),
                    "last_synced_at": ensure_utc(vendor.last_synced_at).isoformat() if vendor.last_synced_at else None,
                    "total_vehicles": bucket["total"],
                    "active_vehicles": bucket[ACTIVE],
                    "unlisted_vehicles": bucket[UNLISTED],
                    "removed_vehicles": bucket[REMOVED],
                    "sold_vehicles": bucket["sold"],
                }
            )
        return stats
