"""Map raw listings onto existing canonical vehicles of the same vendor.

Resolution order: an exact, vendor-scoped VIN match when the listing carries a
well-formed VIN, then the (make, model, year, vendor) composite key. Composite
matching is best-effort: when several records share the key the lowest id wins,
preferring one with the same stock number. Sold records only match on VIN or on
an equal stock number, so a new listing of the same model is never absorbed.

Resolution is check-then-act. Two concurrent runs for the same vendor could both
decide to insert the same vehicle; runs are serialized by the vendor sync lock
and the partial unique index on (vendor_id, vin) rejects VIN duplicates, but
VIN-less duplicates remain possible if the lock is bypassed.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.db import models
from backend.app.parsers._listing_common import RawListing, clean_vin

CompositeKey = Tuple[str, str, int]


@dataclass(frozen=True)
class VehicleSnapshot:
    id: int
    vin: Optional[str]
    make: str
    model: str
    year: int
    stock_number: Optional[str] = None
    fingerprint: Optional[str] = None
    vendor_status: str = "active"
    is_sold: bool = False
    is_published: bool = True
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None
    vendor_image_urls: Optional[Tuple[str, ...]] = None
    images: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_row(cls, row: models.Vehicle) -> "VehicleSnapshot":
        return cls(
            id=row.id,
            vin=row.vin,
            make=row.make,
            model=row.model,
            year=row.year,
            stock_number=row.vendor_stock_number,
            fingerprint=row.fingerprint,
            vendor_status=row.vendor_status or "active",
            is_sold=bool(row.is_sold),
            is_published=row.is_published is not False,
            last_seen=row.last_seen_from_vendor,
            created_at=row.created_at,
            vendor_image_urls=tuple(row.vendor_image_urls) if row.vendor_image_urls is not None else None,
            images=tuple(row.images or ()),
        )


def composite_key(make: str, model: str, year: int) -> CompositeKey:
    return (make.strip().lower(), model.strip().lower(), int(year))


def _same_stock(stored: Optional[str], listed: Optional[str]) -> bool:
    return bool(stored and listed and stored == listed)


class IdentityResolver:
    """Resolves listings against one consistent snapshot of a vendor's vehicles."""

    def __init__(self, snapshot: Iterable[VehicleSnapshot]):
        self.by_id: Dict[int, VehicleSnapshot] = {}
        self._by_vin: Dict[str, int] = {}
        self._by_key: Dict[CompositeKey, List[VehicleSnapshot]] = defaultdict(list)
        self._claimed: Set[int] = set()
        for vehicle in sorted(snapshot, key=lambda v: v.id):
            self.by_id[vehicle.id] = vehicle
            vin = clean_vin(vehicle.vin)
            if vin and vin not in self._by_vin:
                self._by_vin[vin] = vehicle.id
            self._by_key[composite_key(vehicle.make, vehicle.model, vehicle.year)].append(vehicle)

    @property
    def claimed(self) -> Set[int]:
        return set(self._claimed)

    def claim(self, vehicle_id: int) -> None:
        self._claimed.add(vehicle_id)

    def resolve(self, listing: RawListing) -> Optional[int]:
        vin = clean_vin(listing.vin)
        if vin:
            vehicle_id = self._by_vin.get(vin)
            if vehicle_id is not None:
                self._claimed.add(vehicle_id)
                return vehicle_id

        candidates = [
            vehicle
            for vehicle in self._by_key.get(composite_key(listing.make, listing.model, listing.year), [])
            if vehicle.id not in self._claimed
            and (not vin or not clean_vin(vehicle.vin))
            and (not vehicle.is_sold or _same_stock(vehicle.stock_number, listing.stock_number))
        ]
        if not candidates:
            return None
        chosen = candidates[0]
        if listing.stock_number:
            for vehicle in candidates:
                if vehicle.stock_number and vehicle.stock_number == listing.stock_number:
                    chosen = vehicle
                    break
        self._claimed.add(chosen.id)
        return chosen.id


def resolve_identity(session: Session, listing: RawListing, vendor_id: str) -> Optional[int]:
    """Single-listing lookup straight against the database."""
    vin = clean_vin(listing.vin)
    if vin:
        found = session.execute(
            select(models.Vehicle.id)
            .where(models.Vehicle.vendor_id == vendor_id, models.Vehicle.vin == vin)
            .order_by(models.Vehicle.id)
            .limit(1)
        ).scalar_one_or_none()
        if found is not None:
            return found

    stmt = select(models.Vehicle).where(
        models.Vehicle.vendor_id == vendor_id,
        func.lower(models.Vehicle.make) == listing.make.strip().lower(),
        func.lower(models.Vehicle.model) == listing.model.strip().lower(),
        models.Vehicle.year == listing.year,
    )
    if vin:
        stmt = stmt.where(models.Vehicle.vin.is_(None))
    rows = [
        row
        for row in session.execute(stmt.order_by(models.Vehicle.id)).scalars()
        if not row.is_sold or _same_stock(row.vendor_stock_number, listing.stock_number)
    ]
    if not rows:
        return None
    if listing.stock_number:
        for row in rows:
            if row.vendor_stock_number == listing.stock_number:
                return row.id
    return rows[0].id
