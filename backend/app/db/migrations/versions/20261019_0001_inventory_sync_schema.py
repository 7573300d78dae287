"""Vendor inventory sync schema.

Revision ID: 0001_inventory_sync
Revises: None
Create Date: 2026-10-19 09:12:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_inventory_sync"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "vendors",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("source_type", sa.Text(), nullable=False),
        sa.Column("adapter", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        sa.Column("scraping_config", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("sync_in_progress", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sync_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "vehicles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("vin", sa.String(length=17), nullable=True),
        sa.Column("make", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("odometer", sa.Integer(), nullable=True),
        sa.Column("body_type", sa.Text(), nullable=True),
        sa.Column("color", sa.Text(), nullable=True),
        sa.Column("fuel_type", sa.Text(), nullable=True),
        sa.Column("transmission", sa.Text(), nullable=True),
        sa.Column("drivetrain", sa.Text(), nullable=True),
        sa.Column("engine_size", sa.Text(), nullable=True),
        sa.Column("cylinders", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("images", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("vendor_image_urls", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("vendor_id", sa.Text(), sa.ForeignKey("vendors.id"), nullable=False),
        sa.Column("vendor_name", sa.Text(), nullable=True),
        sa.Column("vendor_stock_number", sa.Text(), nullable=True),
        sa.Column("vendor_url", sa.Text(), nullable=True),
        sa.Column("last_seen_from_vendor", sa.DateTime(timezone=True), nullable=True),
        sa.Column("vendor_status", sa.Text(), nullable=False, server_default=sa.text("'active'")),
        sa.Column("is_sold", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_published", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("fingerprint", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_vehicles_vendor_vin",
        "vehicles",
        ["vendor_id", "vin"],
        unique=True,
        postgresql_where=sa.text("vin IS NOT NULL"),
    )
    op.create_index("ix_vehicles_vendor_composite", "vehicles", ["vendor_id", "make", "model", "year"])
    op.create_index("ix_vehicles_vendor_status", "vehicles", ["vendor_id", "vendor_status"])

    op.create_table(
        "sync_run_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("vendor_id", sa.Text(), nullable=False),
        sa.Column("vendor_name", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("vehicles_found", sa.Integer(), server_default=sa.text("0")),
        sa.Column("new_vehicles", sa.Integer(), server_default=sa.text("0")),
        sa.Column("updated_vehicles", sa.Integer(), server_default=sa.text("0")),
        sa.Column("unchanged_vehicles", sa.Integer(), server_default=sa.text("0")),
        sa.Column("unlisted_vehicles", sa.Integer(), server_default=sa.text("0")),
        sa.Column("removed_vehicles", sa.Integer(), server_default=sa.text("0")),
        sa.Column("pages_fetched", sa.Integer(), server_default=sa.text("0")),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("errors", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )
    op.create_index("ix_sync_run_logs_vendor_id", "sync_run_logs", ["vendor_id"])

    op.create_table(
        "vendor_listing_staging",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("sync_run_id", sa.BigInteger(), sa.ForeignKey("sync_run_logs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("vendor_id", sa.Text(), nullable=False),
        sa.Column("vehicle_id", sa.Integer(), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("vin", sa.String(length=17), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("fingerprint", sa.Text(), nullable=True),
        sa.Column("classification", sa.Text(), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_vendor_listing_staging_vendor_id", "vendor_listing_staging", ["vendor_id"])

    op.create_table(
        "image_processing_jobs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("vendor_name", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("total_vehicles", sa.Integer(), server_default=sa.text("0")),
        sa.Column("vehicles_processed", sa.Integer(), server_default=sa.text("0")),
        sa.Column("images_uploaded", sa.Integer(), server_default=sa.text("0")),
        sa.Column("images_failed", sa.Integer(), server_default=sa.text("0")),
        sa.Column("current_vehicle", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("image_processing_jobs")
    op.drop_index("ix_vendor_listing_staging_vendor_id", table_name="vendor_listing_staging")
    op.drop_table("vendor_listing_staging")
    op.drop_index("ix_sync_run_logs_vendor_id", table_name="sync_run_logs")
    op.drop_table("sync_run_logs")
    op.drop_index("ix_vehicles_vendor_status", table_name="vehicles")
    op.drop_index("ix_vehicles_vendor_composite", table_name="vehicles")
    op.drop_index("uq_vehicles_vendor_vin", table_name="vehicles")
    op.drop_table("vehicles")
    op.drop_table("vendors")
