from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy import delete, select

from backend.app.core.log import get_logger
from backend.app.db import models
from backend.app.db.session import SessionFactory, session_scope
from backend.app.parsers._listing_common import RawListing
from backend.app.services.fingerprint import SchemeChangeDetector, fingerprint
from backend.app.services.identity import IdentityResolver, VehicleSnapshot
from backend.app.services.status import ACTIVE, REMOVED, UNLISTED, ensure_utc, missing_transition

if TYPE_CHECKING:
    from backend.app.services.vendor_config import VendorConfig

logger = get_logger(__name__)


MUTABLE_FIELDS = (
    "make",
    "model",
    "year",
    "price",
    "odometer",
    "body_type",
    "color",
    "fuel_type",
    "transmission",
    "drivetrain",
    "engine_size",
    "cylinders",
    "description",
)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (TypeError, ValueError, ArithmeticError):
        return None


@dataclass
class ReconcileOutcome:
    found: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    unlisted: int = 0
    removed: int = 0
    touched: int = 0
    sold_skipped: int = 0
    duplicates: int = 0
    reclassified: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    new_vehicle_ids: List[int] = field(default_factory=list)
    updated_vehicle_ids: List[int] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return self.new + self.updated + self.unlisted + self.removed + self.touched

    def counts(self) -> Dict[str, int]:
        return {
            "found": self.found,
            "new": self.new,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "unlisted": self.unlisted,
            "removed": self.removed,
        }


@dataclass
class _Staged:
    listing: RawListing
    fingerprint: str
    classification: str
    vehicle_id: Optional[int] = None


class ReconciliationEngine:
    """Applies one crawl's listings to a vendor's canonical vehicles.

    Every record is written in its own transaction, so one failing row never
    blocks the others and the returned counters only reflect committed writes.
    Vehicles flagged `is_sold` are left untouched.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self.session_factory = session_factory or session_scope

    def load_snapshot(self, vendor_id: str) -> List[VehicleSnapshot]:
        with self.session_factory() as session:
            rows = session.execute(
                select(models.Vehicle).where(models.Vehicle.vendor_id == vendor_id).order_by(models.Vehicle.id)
            ).scalars()
            return [VehicleSnapshot.from_row(row) for row in rows]

    def reconcile(
        self,
        vendor: "VendorConfig",
        listings: Sequence[RawListing],
        now: Optional[datetime] = None,
        *,
        sync_run_id: Optional[int] = None,
        apply_missing: bool = True,
    ) -> ReconcileOutcome:
        now = ensure_utc(now) or datetime.now(timezone.utc)
        outcome = ReconcileOutcome()
        snapshot = self.load_snapshot(vendor.vendor_id)
        resolver = IdentityResolver(snapshot)
        detector = SchemeChangeDetector(vendor.vendor_id)
        seen_ids: Set[int] = set()
        staged: List[_Staged] = []
        refresh_after = timedelta(hours=vendor.last_seen_refresh_hours)

        for listing in self._dedupe(listings, outcome):
            outcome.found += 1
            fp = fingerprint(listing)
            vehicle_id = resolver.resolve(listing)

            if vehicle_id is None:
                new_id = self._guarded(outcome, listing, "insert", self._insert, vendor, listing, fp, now)
                if new_id is not None:
                    outcome.new += 1
                    outcome.new_vehicle_ids.append(new_id)
                    seen_ids.add(new_id)
                    staged.append(_Staged(listing, fp, "new", new_id))
                continue

            seen_ids.add(vehicle_id)
            current = resolver.by_id[vehicle_id]
            if current.is_sold:
                outcome.sold_skipped += 1
                staged.append(_Staged(listing, fp, "sold", vehicle_id))
                continue

            if detector.check(current.fingerprint):
                outcome.reclassified += 1

            if current.fingerprint != fp or current.vendor_status != ACTIVE:
                if self._guarded(
                    outcome, listing, "update", self._update, vehicle_id, current, listing, fp, now, vehicle_id=vehicle_id
                ):
                    outcome.updated += 1
                    outcome.updated_vehicle_ids.append(vehicle_id)
                    staged.append(_Staged(listing, fp, "changed", vehicle_id))
                continue

            outcome.unchanged += 1
            staged.append(_Staged(listing, fp, "unchanged", vehicle_id))
            last_seen = ensure_utc(current.last_seen)
            if last_seen is None or now - last_seen >= refresh_after:
                if self._guarded(outcome, listing, "touch", self._touch, vehicle_id, now, vehicle_id=vehicle_id):
                    outcome.touched += 1

        if apply_missing:
            self._apply_missing(vendor, snapshot, seen_ids, now, outcome)

        if sync_run_id is not None:
            self._stage(vendor.vendor_id, sync_run_id, staged, now, outcome)

        logger.info(
            "vendor %s reconciled: found=%s new=%s updated=%s unchanged=%s unlisted=%s removed=%s errors=%s",
            vendor.vendor_id,
            outcome.found,
            outcome.new,
            outcome.updated,
            outcome.unchanged,
            outcome.unlisted,
            outcome.removed,
            len(outcome.errors),
        )
        return outcome

    @staticmethod
    def _dedupe(listings: Sequence[RawListing], outcome: ReconcileOutcome) -> List[RawListing]:
        unique: List[RawListing] = []
        seen_vins: Set[str] = set()
        seen_urls: Set[str] = set()
        for listing in listings:
            if listing.vin and listing.vin in seen_vins:
                outcome.duplicates += 1
                continue
            if listing.source_url in seen_urls:
                outcome.duplicates += 1
                continue
            if listing.vin:
                seen_vins.add(listing.vin)
            seen_urls.add(listing.source_url)
            unique.append(listing)
        if outcome.duplicates:
            logger.info("dropped %s duplicate listings from the crawl", outcome.duplicates)
        return unique

    @staticmethod
    def _guarded(
        outcome: ReconcileOutcome,
        listing: Optional[RawListing],
        stage: str,
        func: Callable[..., Any],
        *args: Any,
        vehicle_id: Optional[int] = None,
    ) -> Any:
        try:
            return func(*args)
        except Exception as exc:
            logger.warning("%s failed for %s: %s", stage, listing.source_url if listing else "-", exc)
            outcome.errors.append(
                {
                    "stage": stage,
                    "source_url": listing.source_url if listing else None,
                    "vin": listing.vin if listing else None,
                    "vehicle_id": vehicle_id,
                    "error": str(exc),
                }
            )
            return None

    def _insert(self, vendor: "VendorConfig", listing: RawListing, fp: str, now: datetime) -> int:
        with self.session_factory() as session:
            vehicle = models.Vehicle(
                vin=listing.vin,
                vendor_id=vendor.vendor_id,
                vendor_name=vendor.name,
                vendor_stock_number=listing.stock_number,
                vendor_url=listing.source_url,
                images=list(listing.images),
                vendor_image_urls=list(listing.images),
                fingerprint=fp,
                vendor_status=ACTIVE,
                is_sold=False,
                is_published=True,
                last_seen_from_vendor=now,
                created_at=now,
                updated_at=now,
            )
            for name in MUTABLE_FIELDS:
                value = getattr(listing, name)
                setattr(vehicle, name, _as_decimal(value) if name == "price" else value)
            session.add(vehicle)
            session.flush()
            return vehicle.id

    def _update(self, vehicle_id: int, current: VehicleSnapshot, listing: RawListing, fp: str, now: datetime) -> bool:
        with self.session_factory() as session:
            vehicle = session.get(models.Vehicle, vehicle_id)
            if vehicle is None:
                raise LookupError(f"vehicle {vehicle_id} disappeared during reconciliation")
            for name in MUTABLE_FIELDS:
                value = getattr(listing, name)
                if value is None:
                    continue
                setattr(vehicle, name, _as_decimal(value) if name == "price" else value)
            if listing.vin and not vehicle.vin:
                vehicle.vin = listing.vin
            if listing.stock_number:
                vehicle.vendor_stock_number = listing.stock_number
            vehicle.vendor_url = listing.source_url or vehicle.vendor_url

            upstream = list(listing.images)
            known = list(current.vendor_image_urls) if current.vendor_image_urls is not None else None
            if upstream and (upstream != known or not vehicle.images):
                # the vendor's photo set changed; migrated copies of the old set are stale
                vehicle.images = upstream
                vehicle.vendor_image_urls = upstream

            if current.vendor_status != ACTIVE:
                logger.info("vehicle %s back on vendor site (was %s)", vehicle_id, current.vendor_status)
            vehicle.vendor_status = ACTIVE
            vehicle.is_published = True
            vehicle.fingerprint = fp
            vehicle.last_seen_from_vendor = now
            vehicle.updated_at = now
        return True

    def _touch(self, vehicle_id: int, now: datetime) -> bool:
        with self.session_factory() as session:
            vehicle = session.get(models.Vehicle, vehicle_id)
            if vehicle is None:
                raise LookupError(f"vehicle {vehicle_id} disappeared during reconciliation")
            vehicle.last_seen_from_vendor = now
        return True

    def _apply_missing(
        self,
        vendor: "VendorConfig",
        snapshot: Sequence[VehicleSnapshot],
        seen_ids: Set[int],
        now: datetime,
        outcome: ReconcileOutcome,
    ) -> None:
        for current in snapshot:
            if current.id in seen_ids or current.is_sold or current.vendor_status == REMOVED:
                continue
            target = missing_transition(
                current.last_seen or current.created_at,
                now,
                grace_period_days=vendor.grace_period_days,
                auto_remove_after_days=vendor.auto_remove_after_days,
            )
            if target.status == current.vendor_status and target.is_published == current.is_published:
                continue
            marked = self._guarded(
                outcome,
                None,
                f"mark_{target.status}",
                self._mark_missing,
                current.id,
                target.status,
                target.is_published,
                now,
                vehicle_id=current.id,
            )
            if not marked:
                continue
            if target.status == REMOVED:
                outcome.removed += 1
            elif current.vendor_status != UNLISTED:
                outcome.unlisted += 1

    def _mark_missing(self, vehicle_id: int, status: str, is_published: bool, now: datetime) -> bool:
        with self.session_factory() as session:
            vehicle = session.get(models.Vehicle, vehicle_id)
            if vehicle is None or vehicle.is_sold:
                raise LookupError(f"vehicle {vehicle_id} is no longer eligible for {status}")
            vehicle.vendor_status = status
            vehicle.is_published = is_published
            vehicle.updated_at = now
        return True

    def _stage(
        self,
        vendor_id: str,
        sync_run_id: int,
        staged: Sequence[_Staged],
        now: datetime,
        outcome: ReconcileOutcome,
    ) -> None:
        def _write() -> None:
            with self.session_factory() as session:
                session.execute(
                    delete(models.VendorListingStaging).where(models.VendorListingStaging.vendor_id == vendor_id)
                )
                for item in staged:
                    session.add(
                        models.VendorListingStaging(
                            sync_run_id=sync_run_id,
                            vendor_id=vendor_id,
                            vehicle_id=item.vehicle_id,
                            source_url=item.listing.source_url,
                            vin=item.listing.vin,
                            title=item.listing.title,
                            price=_as_decimal(item.listing.price),
                            fingerprint=item.fingerprint,
                            classification=item.classification,
                            captured_at=item.listing.captured_at or now,
                        )
                    )

        self._guarded(outcome, None, "staging", _write)
