from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("user_id", sa.Integer, nullable=False),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("size", sa.BigInteger, nullable=False, server_default=sa.text("0")),  # bytes
    sa.Column("bitrate", sa.BigInteger, nullable=False, server_default=sa.text("0")),
    sa.Column("resolution_x", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("resolution_y", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("ratio_x", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("ratio_y", sa.Integer, nullable=False, server_default=sa.text("0")),
    # Opaque key into blob storage
    sa.Column("service_id", sa.String(512), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.CheckConstraint("size >= 0", name="ck_videos_size_non_negative"),
    sa.Index("ix_videos_user_id", "user_id"),
)

requests = sa.Table(
    "requests",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("user_id", sa.Integer, nullable=False),
    sa.Column("video_name", sa.String(255), nullable=False),
    sa.Column("bitrate", sa.BigInteger, nullable=False, server_default=sa.text("0")),
    sa.Column("resolution_x", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("resolution_y", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("ratio_x", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("ratio_y", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('in_review', 'completed', 'failed')",
            name="ck_requests_status"
        ),
        nullable=False,
        server_default="in_review",
    ),
    sa.Column("details", sa.Text, nullable=False, server_default=""),
    sa.Column("original_file_id", sa.Integer, sa.ForeignKey("videos.id"), nullable=True),
    sa.Column("converted_file_id", sa.Integer, sa.ForeignKey("videos.id"), nullable=True),
    # Bumped on every update; terminal transitions are conditional on it
    sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("1")),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint("status != 'failed' OR details != ''", name="ck_requests_failed_has_details"),
    sa.Index("ix_requests_user_id", "user_id"),
    sa.Index("ix_requests_status", "status"),
)


def create_tables(url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
