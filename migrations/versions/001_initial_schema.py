"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates the requests and videos tables.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the videos and requests tables."""
    op.create_table(
        "videos",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("bitrate", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("resolution_x", sa.Integer, nullable=False, server_default="0"),
        sa.Column("resolution_y", sa.Integer, nullable=False, server_default="0"),
        sa.Column("ratio_x", sa.Integer, nullable=False, server_default="0"),
        sa.Column("ratio_y", sa.Integer, nullable=False, server_default="0"),
        sa.Column("service_id", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("size >= 0", name="ck_videos_size_non_negative"),
    )
    op.create_index("ix_videos_user_id", "videos", ["user_id"])

    op.create_table(
        "requests",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, nullable=False),
        sa.Column("video_name", sa.String(255), nullable=False),
        sa.Column("bitrate", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("resolution_x", sa.Integer, nullable=False, server_default="0"),
        sa.Column("resolution_y", sa.Integer, nullable=False, server_default="0"),
        sa.Column("ratio_x", sa.Integer, nullable=False, server_default="0"),
        sa.Column("ratio_y", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="in_review"),
        sa.Column("details", sa.Text, nullable=False, server_default=""),
        sa.Column("original_file_id", sa.Integer, sa.ForeignKey("videos.id"), nullable=True),
        sa.Column("converted_file_id", sa.Integer, sa.ForeignKey("videos.id"), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('in_review', 'completed', 'failed')", name="ck_requests_status"),
        sa.CheckConstraint("status != 'failed' OR details != ''", name="ck_requests_failed_has_details"),
    )
    op.create_index("ix_requests_user_id", "requests", ["user_id"])
    op.create_index("ix_requests_status", "requests", ["status"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("requests")
    op.drop_table("videos")
