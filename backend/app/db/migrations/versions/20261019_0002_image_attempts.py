"""Track the last image migration attempt per vehicle.

Revision ID: 0002_image_attempts
Revises: 0001_inventory_sync
Create Date: 2026-10-19 16:40:00
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_image_attempts"
down_revision = "0001_inventory_sync"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("vehicles", sa.Column("images_attempted_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("ix_vehicles_images_attempted_at", "vehicles", ["images_attempted_at"])


def downgrade() -> None:
    op.drop_index("ix_vehicles_images_attempted_at", table_name="vehicles")
    op.drop_column("vehicles", "images_attempted_at")
