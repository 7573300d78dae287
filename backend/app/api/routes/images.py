from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.app.core.log import get_logger
from backend.app.services.image_ingest import (
    ImageIngestionPipeline,
    create_job,
    get_job,
    image_status_stats,
    list_jobs,
)

logger = get_logger(__name__)

router = APIRouter()


class ImageBatchIn(BaseModel):
    vehicle_ids: Optional[List[int]] = None
    batch_size: int = Field(default=5, ge=1, le=100)
    vendor_name: Optional[str] = None


def get_pipeline() -> ImageIngestionPipeline:
    return ImageIngestionPipeline()


async def _run_batch(pipeline: ImageIngestionPipeline, job_id: str, body: ImageBatchIn) -> None:
    try:
        await pipeline.process_batch(
            vehicle_ids=body.vehicle_ids,
            batch_size=body.batch_size,
            vendor_name=body.vendor_name,
            job_id=job_id,
        )
    except Exception:
        logger.exception("image batch %s crashed", job_id)
        raise
    finally:
        await pipeline.aclose()


@router.post("/process", status_code=202)
async def process_images(
    body: ImageBatchIn,
    background_tasks: BackgroundTasks,
    pipeline: ImageIngestionPipeline = Depends(get_pipeline),
):
    job_id = create_job(body.vendor_name)
    background_tasks.add_task(_run_batch, pipeline, job_id, body)
    return {"job_id": job_id, "status": "pending"}


@router.get("/jobs")
async def jobs(limit: int = 20):
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    return {"jobs": list_jobs(min(limit, 100))}


@router.get("/jobs/{job_id}")
async def job_status(job_id: str):
    job = get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"image job {job_id} not found")
    return job


@router.get("/status")
async def status():
    return image_status_stats()
