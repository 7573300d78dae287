from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ValidationError, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core.log import get_logger
from backend.app.core.settings import settings
from backend.app.db import models
from backend.app.db.session import session_scope
from backend.app.parsers.registry import FEED_ADAPTERS, HTML_ADAPTERS

logger = get_logger(__name__)


class VendorConfigError(Exception):
    """Raised when a vendor is unknown or its configuration is invalid."""


class VendorConfig(BaseModel):
    vendor_id: str
    name: str
    source_type: Literal["html", "feed"] = "html"
    adapter: str
    base_url: str
    is_active: bool = True
    listing_path_template: Optional[str] = None
    first_page_path: Optional[str] = None
    items_per_page: int = 20
    max_pages: int = 10
    request_delay_min: float = 0.5
    request_delay_max: float = 1.5
    link_pattern: Optional[str] = None
    link_path_segments: Optional[int] = None
    field_patterns: Dict[str, str] = {}
    field_defaults: Dict[str, Any] = {}
    feed_url: Optional[str] = None
    grace_period_days: int = 3
    auto_remove_after_days: int = 7
    max_images: int = 15
    last_seen_refresh_hours: int = 12
    crawl_timeout_seconds: Optional[float] = None

    @field_validator("adapter")
    @classmethod
    def _known_adapter(cls, value: str) -> str:
        key = value.strip().upper()
        if key not in HTML_ADAPTERS and key not in FEED_ADAPTERS:
            raise ValueError(f"unknown adapter {value!r}")
        return key

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @model_validator(mode="after")
    def _consistent(self) -> "VendorConfig":
        if self.source_type == "feed":
            if self.adapter not in FEED_ADAPTERS:
                raise ValueError(f"adapter {self.adapter} cannot read feeds")
            if not self.feed_url:
                raise ValueError("feed vendors need a feed_url")
        elif self.adapter not in HTML_ADAPTERS:
            raise ValueError(f"adapter {self.adapter} cannot crawl html pages")
        if self.request_delay_min < 0 or self.request_delay_max < self.request_delay_min:
            raise ValueError("request delays must satisfy 0 <= min <= max")
        if self.max_pages < 1 or self.items_per_page < 1 or self.max_images < 1:
            raise ValueError("max_pages, items_per_page and max_images must be >= 1")
        if self.grace_period_days < 0 or self.auto_remove_after_days < self.grace_period_days:
            raise ValueError("auto_remove_after_days must be >= grace_period_days >= 0")
        return self


def parse_vendor_configs(data: Any) -> List[VendorConfig]:
    entries = data.get("vendors", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise VendorConfigError("vendors file must contain a list under 'vendors'")
    configs: List[VendorConfig] = []
    for entry in entries:
        try:
            configs.append(VendorConfig.model_validate(entry))
        except ValidationError as exc:
            vendor = entry.get("vendor_id") if isinstance(entry, dict) else entry
            raise VendorConfigError(f"invalid configuration for vendor {vendor}: {exc}") from exc
    return configs


def load_vendor_configs(path: str | Path | None = None) -> List[VendorConfig]:
    vendors_path = Path(path or settings.vendors_file)
    if not vendors_path.exists():
        raise VendorConfigError(f"vendors file not found: {vendors_path}")
    data = yaml.safe_load(vendors_path.read_text(encoding="utf-8")) or {}
    return parse_vendor_configs(data)


def _apply_config(vendor: models.Vendor, config: VendorConfig) -> None:
    vendor.name = config.name
    vendor.source_type = config.source_type
    vendor.adapter = config.adapter
    vendor.is_active = config.is_active
    vendor.scraping_config = config.model_dump(mode="json")


def upsert_vendor_configs(configs: List[VendorConfig], session: Optional[Session] = None) -> Dict[str, int]:
    """Persist vendor configurations to the vendors table (insert or overwrite)."""
    created = 0
    updated = 0

    def _write(db: Session) -> None:
        nonlocal created, updated
        for config in configs:
            vendor = db.get(models.Vendor, config.vendor_id)
            if vendor is None:
                vendor = models.Vendor(id=config.vendor_id, sync_in_progress=False)
                db.add(vendor)
                created += 1
            else:
                updated += 1
            _apply_config(vendor, config)
        db.flush()

    if session is not None:
        _write(session)
    else:
        with session_scope() as db:
            _write(db)
    logger.info("vendor configs saved: %s created, %s updated", created, updated)
    return {"created": created, "updated": updated}


def _config_from_row(vendor: models.Vendor) -> VendorConfig:
    raw = dict(vendor.scraping_config or {})
    raw.setdefault("vendor_id", vendor.id)
    raw.setdefault("name", vendor.name)
    raw.setdefault("source_type", vendor.source_type)
    raw.setdefault("adapter", vendor.adapter)
    raw["is_active"] = bool(vendor.is_active) if vendor.is_active is not None else True
    try:
        return VendorConfig.model_validate(raw)
    except ValidationError as exc:
        raise VendorConfigError(f"stored configuration for vendor {vendor.id} is invalid: {exc}") from exc


def get_vendor_config(vendor_id: str, session: Optional[Session] = None) -> VendorConfig:
    if session is not None:
        vendor = session.get(models.Vendor, vendor_id)
        if vendor is None:
            raise VendorConfigError(f"unknown vendor {vendor_id}")
        return _config_from_row(vendor)
    with session_scope() as db:
        return get_vendor_config(vendor_id, db)


def list_vendor_configs(active_only: bool = True) -> List[VendorConfig]:
    with session_scope() as db:
        stmt = select(models.Vendor).order_by(models.Vendor.id)
        if active_only:
            stmt = stmt.where(models.Vendor.is_active.is_not(False))
        return [_config_from_row(vendor) for vendor in db.execute(stmt).scalars()]
