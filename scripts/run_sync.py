#!/usr/bin/env python3
"""Cron entry point for vendor syncs and image batches.

Usage:
  python scripts/run_sync.py --load-vendors data/vendors.yaml
  python scripts/run_sync.py --vendor lambert
  python scripts/run_sync.py --all --images 10
  python scripts/run_sync.py --migrate

Each vendor run and each image batch is independent; a failing vendor does not
stop the others. The exit code is 1 when any run ended `failed`.
"""
import argparse, asyncio, json, sys
from pathlib import Path
from typing import Any, Dict, List

from alembic.config import Config as AlembicConfig
from alembic import command as alembic_command

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.core.log import get_logger  # noqa: E402
from backend.app.core.settings import settings  # noqa: E402
from backend.app.services.crawl_orchestrator import CrawlOrchestrator, SyncInProgressError  # noqa: E402
from backend.app.services.image_ingest import ImageIngestionPipeline  # noqa: E402
from backend.app.services.vendor_config import (  # noqa: E402
    VendorConfigError,
    get_vendor_config,
    list_vendor_configs,
    load_vendor_configs,
    upsert_vendor_configs,
)

logger = get_logger("run_sync")


def migrate() -> None:
    alembic_cfg = AlembicConfig(str(ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(ROOT / "backend" / "app" / "db" / "migrations"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    alembic_command.upgrade(alembic_cfg, "head")


def log_notification(message: Dict[str, Any]) -> None:
    logger.info("notification: %s", message["body"])


async def sync_vendors(vendor_ids: List[str]) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    orchestrator = CrawlOrchestrator(notifier=log_notification)
    try:
        for vendor_id in vendor_ids:
            try:
                config = get_vendor_config(vendor_id)
                results.append(await orchestrator.run(config))
            except SyncInProgressError as exc:
                logger.warning("%s", exc)
                results.append({"vendor_id": vendor_id, "status": "skipped", "error_message": str(exc)})
            except VendorConfigError as exc:
                logger.error("%s", exc)
                results.append({"vendor_id": vendor_id, "status": "failed", "error_message": str(exc)})
    finally:
        await orchestrator.aclose()
    return results


async def process_images(batch_size: int, vendor_name: str | None) -> Dict[str, Any]:
    pipeline = ImageIngestionPipeline()
    try:
        return await pipeline.process_batch(batch_size=batch_size, vendor_name=vendor_name)
    finally:
        await pipeline.aclose()


def main():
    ap = argparse.ArgumentParser(description="Run vendor inventory syncs and image batches")
    ap.add_argument("--vendor", action="append", default=[], help="Vendor id to sync (repeatable)")
    ap.add_argument("--all", action="store_true", help="Sync every active vendor")
    ap.add_argument("--images", type=int, default=0, metavar="N", help="Process images for up to N vehicles")
    ap.add_argument("--image-vendor", type=str, help="Restrict the image batch to one vendor name")
    ap.add_argument("--load-vendors", type=str, metavar="PATH", help="Load vendor configs from a YAML file")
    ap.add_argument("--migrate", action="store_true", help="Apply database migrations first")
    args = ap.parse_args()

    if not (args.vendor or args.all or args.images or args.load_vendors or args.migrate):
        ap.print_help()
        sys.exit(1)

    if args.migrate:
        migrate()

    if args.load_vendors:
        try:
            counts = upsert_vendor_configs(load_vendor_configs(args.load_vendors))
        except VendorConfigError as exc:
            logger.error("%s", exc)
            sys.exit(1)
        print(f"Vendors loaded: {counts['created']} created, {counts['updated']} updated")

    vendor_ids = list(args.vendor)
    if args.all:
        vendor_ids.extend(c.vendor_id for c in list_vendor_configs() if c.vendor_id not in vendor_ids)

    failed = False
    if vendor_ids:
        for result in asyncio.run(sync_vendors(vendor_ids)):
            failed = failed or result["status"] == "failed"
            print(json.dumps({k: v for k, v in result.items() if k != "errors"}, default=str))

    if args.images:
        summary = asyncio.run(process_images(args.images, args.image_vendor))
        failed = failed or summary.get("status") == "failed"
        print(json.dumps({k: v for k, v in summary.items() if k != "vehicles"}, default=str))

    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
