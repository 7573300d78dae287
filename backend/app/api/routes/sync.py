from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from backend.app.db.session import get_session
from backend.app.services.crawl_orchestrator import (
    CrawlOrchestrator,
    SyncInProgressError,
    list_runs,
    vendor_stats,
)
from backend.app.services.vendor_config import VendorConfigError, get_vendor_config

MAX_RUNS = 200

router = APIRouter()


def get_orchestrator() -> CrawlOrchestrator:
    return CrawlOrchestrator()


@router.post("/vendors/{vendor_id}")
async def sync_vendor(
    vendor_id: str,
    db: Session = Depends(get_session),
    orchestrator: CrawlOrchestrator = Depends(get_orchestrator),
):
    try:
        config = get_vendor_config(vendor_id, db)
    except VendorConfigError as exc:
        await orchestrator.aclose()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.close()

    try:
        return await orchestrator.run(config)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except VendorConfigError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    finally:
        await orchestrator.aclose()


@router.get("/runs")
async def runs(vendor_id: Optional[str] = None, limit: int = 20):
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    return {"runs": list_runs(vendor_id, min(limit, MAX_RUNS))}


@router.get("/vendors/stats")
async def stats():
    return {"vendors": vendor_stats()}
