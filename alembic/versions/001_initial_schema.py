"""Initial schema: runs, projects, scenes, images, credentials, ledger, build mirror

Revision ID: 001
Revises:
Create Date: 2026-02-01 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")

ACTIVE_RUN_PREDICATE = sa.text("phase NOT IN ('ready', 'failed', 'canceled')")


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "runs" in existing_tables:
        return

    # Create users table
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.Text, nullable=False, unique=True),
        sa.Column("api_sponsor_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )

    # Create user_api_keys table (Fernet-encrypted)
    op.create_table(
        "user_api_keys",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("encrypted_key", sa.Text, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_user_api_keys_user_provider", "user_api_keys", ["user_id", "provider"])

    # Create style_presets and characters tables
    op.create_table(
        "style_presets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("prompt_prefix", sa.Text),
        sa.Column("prompt_suffix", sa.Text),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "characters",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("appearance", sa.Text),
        sa.Column("reference_image_key", sa.Text),
    )

    # Create projects table
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("source_text", sa.Text),
        sa.Column("status", sa.Text, nullable=False, server_default="created"),
        sa.Column("output_preset", sa.Text),
        sa.Column("settings_json", JSONType),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    # Create scenes and scene_utterances tables
    op.create_table(
        "scenes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("idx", sa.Integer, nullable=False),
        sa.Column("title", sa.Text),
        sa.Column("dialogue", sa.Text),
        sa.Column("image_prompt", sa.Text),
        sa.Column("is_hidden", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_scenes_project_idx", "scenes", ["project_id", "idx"])

    op.create_table(
        "scene_utterances",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("scene_id", sa.Integer, sa.ForeignKey("scenes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_no", sa.Integer, nullable=False, server_default="0"),
        sa.Column("text", sa.Text, nullable=False),
        sa.Column("audio_status", sa.Text),
    )
    op.create_index("idx_scene_utterances_scene_id", "scene_utterances", ["scene_id"])

    # Create image_generations table
    op.create_table(
        "image_generations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("scene_id", sa.Integer, sa.ForeignKey("scenes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("prompt", sa.Text),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("blob_key", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("started_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_image_generations_scene_active", "image_generations", ["scene_id", "is_active"])
    op.create_index("idx_image_generations_status", "image_generations", ["status"])

    # Create runs table
    op.create_table(
        "runs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("started_by_user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("started_from", sa.Text),
        sa.Column("phase", sa.Text, nullable=False, server_default="init"),
        sa.Column("config", JSONType, nullable=False),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("locked_at", sa.DateTime),
        sa.Column("locked_until", sa.DateTime),
        sa.Column("error_code", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("error_phase", sa.Text),
        sa.Column("audio_job_id", sa.String(64)),
        sa.Column("video_build_id", sa.Integer),
        sa.Column("video_build_attempted_at", sa.DateTime),
        sa.Column("video_build_error", sa.Text),
        sa.Column("is_archived", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("phase_changed_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime),
    )
    op.create_index("idx_runs_project_id", "runs", ["project_id"])
    op.create_index("idx_runs_user_phase", "runs", ["started_by_user_id", "phase"])
    op.create_index(
        "uq_runs_one_active_per_project",
        "runs",
        ["project_id"],
        unique=True,
        sqlite_where=ACTIVE_RUN_PREDICATE,
        postgresql_where=ACTIVE_RUN_PREDICATE,
    )

    # Create api_usage_logs table
    op.create_table(
        "api_usage_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id", ondelete="SET NULL")),
        sa.Column("run_id", sa.Integer, sa.ForeignKey("runs.id", ondelete="SET NULL")),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("model", sa.Text),
        sa.Column("operation", sa.Text, nullable=False),
        sa.Column("api_key_source", sa.Text, nullable=False),
        sa.Column("sponsored_by_user_id", sa.Integer),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("estimated_cost_usd", sa.Float, nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("metadata", JSONType),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_api_usage_logs_user_id", "api_usage_logs", ["user_id"])
    op.create_index("idx_api_usage_logs_project_id", "api_usage_logs", ["project_id"])

    # Create video_builds mirror table
    op.create_table(
        "video_builds",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="submitted"),
        sa.Column("progress_percent", sa.Integer),
        sa.Column("download_url", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("last_event_id", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_video_builds_project_status", "video_builds", ["project_id", "status"])


def downgrade() -> None:
    op.drop_table("video_builds")
    op.drop_table("api_usage_logs")
    op.drop_table("runs")
    op.drop_table("image_generations")
    op.drop_table("scene_utterances")
    op.drop_table("scenes")
    op.drop_table("projects")
    op.drop_table("characters")
    op.drop_table("style_presets")
    op.drop_table("user_api_keys")
    op.drop_table("users")
