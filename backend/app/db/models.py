from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, Float, Boolean, Text, DateTime, ForeignKey, Index, JSON, func
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Vendor(Base):
    __tablename__ = "vendors"
    id = Column(Text, primary_key=True)  # vendor slug, e.g. "lambert"
    name = Column(Text, nullable=False)
    source_type = Column(Text, nullable=False)  # html|feed
    adapter = Column(Text, nullable=False)      # WP_CAR_DEALER|B_DETAIL|FEED_XML|FEED_JSON
    is_active = Column(Boolean, default=True)
    scraping_config = Column(JSONType)
    sync_in_progress = Column(Boolean, nullable=False, default=False)
    sync_started_at = Column(DateTime(timezone=True))
    last_synced_at = Column(DateTime(timezone=True))

class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Integer, primary_key=True, autoincrement=True)
    vin = Column(String(17))
    make = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    year = Column(Integer, nullable=False)
    price = Column(Numeric(10,2))
    odometer = Column(Integer)  # km
    body_type = Column(Text)
    color = Column(Text)
    fuel_type = Column(Text)
    transmission = Column(Text)
    drivetrain = Column(Text)
    engine_size = Column(Text)
    cylinders = Column(Integer)
    description = Column(Text)
    images = Column(JSONType, nullable=False, default=list)  # external URLs and/or media-store ids
    vendor_image_urls = Column(JSONType)  # image URLs as last listed by the vendor
    vendor_id = Column(Text, ForeignKey("vendors.id"), nullable=False)
    vendor_name = Column(Text)
    vendor_stock_number = Column(Text)
    vendor_url = Column(Text)
    last_seen_from_vendor = Column(DateTime(timezone=True))
    vendor_status = Column(Text, nullable=False, default="active")  # active|unlisted|removed
    is_sold = Column(Boolean, nullable=False, default=False)  # staff-controlled
    is_published = Column(Boolean, nullable=False, default=True)
    fingerprint = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True))
    images_attempted_at = Column(DateTime(timezone=True))  # last image migration attempt
    __table_args__ = (
        Index(
            "uq_vehicles_vendor_vin",
            "vendor_id",
            "vin",
            unique=True,
            postgresql_where=vin.isnot(None),
            sqlite_where=vin.isnot(None),
        ),
        Index("ix_vehicles_vendor_composite", "vendor_id", "make", "model", "year"),
    )

class SyncRunLog(Base):
    __tablename__ = "sync_run_logs"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    vendor_id = Column(Text, nullable=False, index=True)
    vendor_name = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    duration_seconds = Column(Float)
    vehicles_found = Column(Integer, default=0)
    new_vehicles = Column(Integer, default=0)
    updated_vehicles = Column(Integer, default=0)
    unchanged_vehicles = Column(Integer, default=0)
    unlisted_vehicles = Column(Integer, default=0)
    removed_vehicles = Column(Integer, default=0)
    pages_fetched = Column(Integer, default=0)
    status = Column(Text, nullable=False)  # success|partial|failed
    error_message = Column(Text)
    errors = Column(JSONType)

class VendorListingStaging(Base):
    __tablename__ = "vendor_listing_staging"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sync_run_id = Column(BigIntPK, ForeignKey("sync_run_logs.id", ondelete="CASCADE"), nullable=False)
    vendor_id = Column(Text, nullable=False, index=True)
    vehicle_id = Column(Integer)
    source_url = Column(Text)
    vin = Column(String(17))
    title = Column(Text)
    price = Column(Numeric(10,2))
    fingerprint = Column(Text)
    classification = Column(Text, nullable=False)  # new|changed|unchanged|sold
    captured_at = Column(DateTime(timezone=True))

class ImageProcessingJob(Base):
    __tablename__ = "image_processing_jobs"
    id = Column(String(64), primary_key=True)
    vendor_name = Column(Text)
    status = Column(Text, nullable=False)  # pending|processing|completed|failed
    total_vehicles = Column(Integer, default=0)
    vehicles_processed = Column(Integer, default=0)
    images_uploaded = Column(Integer, default=0)
    images_failed = Column(Integer, default=0)
    current_vehicle = Column(Text)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
