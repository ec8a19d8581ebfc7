"""Add indexes for per-session lookups and recency ordering."""

from __future__ import annotations

from alembic import op

revision = "20250308_0002"
down_revision = "20250301_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Index foreign keys and the session listing sort column."""

    op.create_index("idx_sessions_video_id", "sessions", ["video_id"])
    op.create_index("idx_sessions_updated_at", "sessions", ["updated_at"])
    op.create_index("idx_recordings_session_id", "recordings", ["session_id"])
    op.create_index("idx_exports_session_id", "exports", ["session_id"])


def downgrade() -> None:
    """Remove lookup indexes."""

    op.drop_index("idx_exports_session_id", table_name="exports")
    op.drop_index("idx_recordings_session_id", table_name="recordings")
    op.drop_index("idx_sessions_updated_at", table_name="sessions")
    op.drop_index("idx_sessions_video_id", table_name="sessions")
