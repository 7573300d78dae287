from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import String, cast, select, update

from backend.app.core.log import get_logger
from backend.app.core.retry import IMAGE_UPLOAD_POLICY, RetryPolicy
from backend.app.db import models
from backend.app.db.session import SessionFactory, session_scope
from backend.app.services.media_store import (
    ImageTooLargeError,
    MediaStore,
    MediaStoreConfigError,
    build_image_id,
    build_media_store,
    is_external_image,
)
from backend.app.services.page_fetcher import FetchNotFoundError, PageFetcher
from backend.app.services.status import REMOVED

logger = get_logger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class _VehicleWork:
    id: int
    vin: Optional[str]
    label: str
    images: List[Any]


@dataclass
class VehicleImageResult:
    vehicle_id: int
    images: List[Any]
    uploaded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.uploaded)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _vehicle_label(row: Any) -> str:
    return " ".join(str(part) for part in (row.year, row.make, row.model) if part)


def create_job(vendor_name: Optional[str] = None, *, session_factory: Optional[SessionFactory] = None) -> str:
    job_id = uuid.uuid4().hex
    with (session_factory or session_scope)() as session:
        session.add(
            models.ImageProcessingJob(
                id=job_id,
                vendor_name=vendor_name,
                status=PENDING,
                total_vehicles=0,
                vehicles_processed=0,
                images_uploaded=0,
                images_failed=0,
                created_at=_now(),
            )
        )
    return job_id


def _job_to_dict(job: models.ImageProcessingJob) -> Dict[str, Any]:
    total = job.total_vehicles or 0
    processed = job.vehicles_processed or 0
    progress = round(processed / total * 100, 1) if total else (100.0 if job.status == COMPLETED else 0.0)
    return {
        "job_id": job.id,
        "vendor_name": job.vendor_name,
        "status": job.status,
        "total_vehicles": total,
        "vehicles_processed": processed,
        "images_uploaded": job.images_uploaded or 0,
        "images_failed": job.images_failed or 0,
        "current_vehicle": job.current_vehicle,
        "progress": progress,
        "error": job.error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def get_job(job_id: str, *, session_factory: Optional[SessionFactory] = None) -> Optional[Dict[str, Any]]:
    with (session_factory or session_scope)() as session:
        job = session.get(models.ImageProcessingJob, job_id)
        return _job_to_dict(job) if job else None


def list_jobs(limit: int = 20, *, session_factory: Optional[SessionFactory] = None) -> List[Dict[str, Any]]:
    with (session_factory or session_scope)() as session:
        rows = session.execute(
            select(models.ImageProcessingJob)
            .order_by(models.ImageProcessingJob.created_at.desc(), models.ImageProcessingJob.id)
            .limit(limit)
        ).scalars()
        return [_job_to_dict(job) for job in rows]


def image_status_stats(*, session_factory: Optional[SessionFactory] = None) -> Dict[str, int]:
    """Counts of non-removed vehicles by how far their images are migrated."""
    stats = {
        "total_vehicles": 0,
        "with_images": 0,
        "needing_processing": 0,
        "partially_processed": 0,
        "fully_processed": 0,
        "external_images": 0,
        "migrated_images": 0,
    }
    with (session_factory or session_scope)() as session:
        rows = session.execute(
            select(models.Vehicle.images).where(models.Vehicle.vendor_status != REMOVED)
        ).scalars()
        for images in rows:
            stats["total_vehicles"] += 1
            images = [img for img in (images or []) if img]
            if not images:
                continue
            stats["with_images"] += 1
            external = sum(1 for img in images if is_external_image(img))
            migrated = len(images) - external
            stats["external_images"] += external
            stats["migrated_images"] += migrated
            if external == 0:
                stats["fully_processed"] += 1
            else:
                stats["needing_processing"] += 1
                if migrated:
                    stats["partially_processed"] += 1
    return stats


class ImageIngestionPipeline:
    """Moves externally hosted vehicle photos into the media store.

    Vehicles are handled one at a time; the photos of a single vehicle are
    downloaded and uploaded concurrently, bounded by `max_parallel_uploads`.
    A photo that still fails after the retry policy keeps its original URL.
    The job row is the only progress channel and is written after each vehicle.
    """

    def __init__(
        self,
        store: Optional[MediaStore] = None,
        *,
        fetcher: Optional[PageFetcher] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_parallel_uploads: int = 5,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.store = store or build_media_store()
        self.fetcher = fetcher or PageFetcher()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=IMAGE_UPLOAD_POLICY.max_attempts,
            base_delay=IMAGE_UPLOAD_POLICY.base_delay,
            multiplier=IMAGE_UPLOAD_POLICY.multiplier,
            give_up_on=(ImageTooLargeError, MediaStoreConfigError, FetchNotFoundError),
        )
        self.max_parallel_uploads = max(1, max_parallel_uploads)
        self.session_factory = session_factory or session_scope

    async def aclose(self) -> None:
        await self.fetcher.aclose()
        await self.store.aclose()

    async def process_batch(
        self,
        vehicle_ids: Optional[Sequence[int]] = None,
        batch_size: int = 5,
        vendor_name: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        job_id = job_id or create_job(vendor_name, session_factory=self.session_factory)
        self._update_job(job_id, status=PROCESSING, started_at=_now())

        try:
            self.store.ensure_ready()
            work = self.select_vehicles(vehicle_ids, batch_size, vendor_name)
        except Exception as exc:
            logger.error("image batch %s could not start: %s", job_id, exc)
            self._update_job(job_id, status=FAILED, error=str(exc), completed_at=_now())
            return self._summary(job_id, [])

        self._update_job(job_id, total_vehicles=len(work))
        logger.info("image batch %s: %s vehicles selected", job_id, len(work))

        results: List[VehicleImageResult] = []
        uploaded = failed = 0
        try:
            for index, vehicle in enumerate(work, start=1):
                self._update_job(job_id, current_vehicle=vehicle.label)
                result = await self.process_vehicle(vehicle)
                results.append(result)
                uploaded += len(result.uploaded)
                failed += len(result.failed)
                self._mark_attempted(vehicle.id)
                self._update_job(
                    job_id,
                    vehicles_processed=index,
                    images_uploaded=uploaded,
                    images_failed=failed,
                )
        except Exception as exc:
            logger.exception("image batch %s aborted", job_id)
            self._update_job(job_id, status=FAILED, current_vehicle=None, error=str(exc), completed_at=_now())
            return self._summary(job_id, results)

        self._update_job(job_id, status=COMPLETED, current_vehicle=None, completed_at=_now())
        logger.info("image batch %s completed: uploaded=%s failed=%s", job_id, uploaded, failed)
        return self._summary(job_id, results)

    def select_vehicles(
        self,
        vehicle_ids: Optional[Sequence[int]] = None,
        batch_size: int = 5,
        vendor_name: Optional[str] = None,
    ) -> List[_VehicleWork]:
        stmt = select(
            models.Vehicle.id,
            models.Vehicle.vin,
            models.Vehicle.year,
            models.Vehicle.make,
            models.Vehicle.model,
            models.Vehicle.images,
        ).where(
            models.Vehicle.vendor_status != REMOVED,
            cast(models.Vehicle.images, String).like("%http%"),
        )
        if vehicle_ids:
            stmt = stmt.where(models.Vehicle.id.in_(list(vehicle_ids)))
        if vendor_name:
            stmt = stmt.where(models.Vehicle.vendor_name == vendor_name)
        # never-attempted vehicles first, newest first; then the least recently attempted
        stmt = stmt.order_by(
            models.Vehicle.images_attempted_at.asc().nulls_first(),
            models.Vehicle.created_at.desc(),
            models.Vehicle.id.desc(),
        )

        selected: List[_VehicleWork] = []
        limit = None if vehicle_ids else max(1, batch_size)
        with self.session_factory() as session:
            for row in session.execute(stmt):
                images = list(row.images or [])
                if not any(is_external_image(img) for img in images):
                    continue
                selected.append(_VehicleWork(id=row.id, vin=row.vin, label=_vehicle_label(row), images=images))
                if limit is not None and len(selected) >= limit:
                    break
        return selected

    async def process_vehicle(self, vehicle: _VehicleWork) -> VehicleImageResult:
        originals = [img for img in vehicle.images if img]
        external = [(pos, url) for pos, url in enumerate(originals) if is_external_image(url)]
        result = VehicleImageResult(vehicle_id=vehicle.id, images=list(originals))
        if not external:
            return result

        key = vehicle.vin or str(vehicle.id)
        stamp = int(time.time() * 1000)
        semaphore = asyncio.Semaphore(self.max_parallel_uploads)

        async def _one(index: int, url: str) -> str:
            async with semaphore:
                return await self.retry_policy.run(
                    self._transfer,
                    url,
                    build_image_id(key, index, stamp),
                    label=f"image {index} of vehicle {vehicle.id}",
                )

        outcomes = await asyncio.gather(
            *(_one(index, url) for index, (_, url) in enumerate(external)), return_exceptions=True
        )

        for (pos, url), outcome in zip(external, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("vehicle %s: keeping %s after failed upload: %s", vehicle.id, url, outcome)
                result.failed.append(url)
            else:
                result.images[pos] = outcome
                result.uploaded.append(outcome)

        if result.changed:
            try:
                self._save_images(vehicle, result.images)
            except Exception as exc:
                logger.warning("vehicle %s: could not save migrated images: %s", vehicle.id, exc)
                result.error = str(exc)
        return result

    async def _transfer(self, url: str, image_id: str) -> str:
        fetched = await self.fetcher.fetch(url)
        return await self.store.upload(
            fetched.content,
            image_id,
            {"source": "vendor", "originalUrl": url, "uploadedAt": _now().isoformat()},
        )

    def _save_images(self, vehicle: _VehicleWork, images: List[Any]) -> None:
        with self.session_factory() as session:
            row = session.get(models.Vehicle, vehicle.id)
            if row is None:
                raise LookupError(f"vehicle {vehicle.id} no longer exists")
            if list(row.images or []) != vehicle.images:
                raise RuntimeError(f"vehicle {vehicle.id} images changed during upload; skipping rewrite")
            row.images = images
            row.updated_at = _now()

    def _mark_attempted(self, vehicle_id: int) -> None:
        with self.session_factory() as session:
            session.execute(
                update(models.Vehicle)
                .where(models.Vehicle.id == vehicle_id)
                .values(images_attempted_at=_now())
                .execution_options(synchronize_session=False)
            )

    def _update_job(self, job_id: str, **values: Any) -> None:
        values.setdefault("updated_at", _now())
        with self.session_factory() as session:
            job = session.get(models.ImageProcessingJob, job_id)
            if job is None:
                raise LookupError(f"image job {job_id} not found")
            for name, value in values.items():
                setattr(job, name, value)

    def _summary(self, job_id: str, results: Sequence[VehicleImageResult]) -> Dict[str, Any]:
        summary = get_job(job_id, session_factory=self.session_factory) or {"job_id": job_id}
        summary["vehicles"] = [
            {
                "vehicle_id": r.vehicle_id,
                "uploaded": len(r.uploaded),
                "failed": len(r.failed),
                "error": r.error,
            }
            for r in results
        ]
        return summary
