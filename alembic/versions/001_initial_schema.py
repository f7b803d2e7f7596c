"""Initial schema with pgvector

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBED_DIM = 1536


def upgrade() -> None:
    # Enable pgvector extension
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "repositories" in existing_tables:
        # Tables already exist, skip migration
        return

    # Create repositories table
    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("owner", sa.Text, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("full_name", sa.Text, nullable=False, unique=True),
        sa.Column("is_private", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("last_analysis_timestamp", sa.DateTime),
    )

    # Create analysis jobs table
    op.create_table(
        "analysis_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("repository_id", sa.Integer, sa.ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("processing_stage", sa.Text, nullable=False),
        sa.Column("stage_number", sa.Integer, nullable=False, server_default="1"),
        sa.Column("stage_progress", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_issues_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("processed_issues_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("embedded_issues_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_items_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error", sa.Text),
        sa.Column("report", JSONB),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("stage_started_at", sa.DateTime),
        sa.Column("last_processed_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.CheckConstraint("stage_number BETWEEN 1 AND 4", name="ck_analysis_jobs_stage_number"),
    )
    op.create_index("idx_analysis_jobs_repo_status", "analysis_jobs", ["repository_id", "status"])
    op.create_index("idx_analysis_jobs_status", "analysis_jobs", ["status"])

    # Create job items table
    op.create_table(
        "analysis_job_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", UUID(as_uuid=True), sa.ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("issue_number", sa.Integer, nullable=False),
        sa.Column("issue_title", sa.Text, nullable=False),
        sa.Column("issue_body", sa.Text, nullable=False, server_default=""),
        sa.Column("embedding_status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("embedding", Vector(EMBED_DIM)),
        sa.Column("error_message", sa.Text),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("processed_at", sa.DateTime),
        sa.Column("last_retry_at", sa.DateTime),
        sa.UniqueConstraint("job_id", "issue_number", name="uq_job_items_job_issue"),
    )
    op.create_index("idx_job_items_job_status", "analysis_job_items", ["job_id", "embedding_status"])

    # Create duplicate pairs table
    op.create_table(
        "duplicate_issues",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("job_id", UUID(as_uuid=True), sa.ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source_item_id", UUID(as_uuid=True), sa.ForeignKey("analysis_job_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("duplicate_item_id", UUID(as_uuid=True), sa.ForeignKey("analysis_job_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("confidence_score", sa.Float, nullable=False),
        sa.UniqueConstraint("source_item_id", "duplicate_item_id", name="uq_duplicate_pair"),
    )
    op.create_index("idx_duplicate_issues_job_id", "duplicate_issues", ["job_id"])


def downgrade() -> None:
    op.drop_table("duplicate_issues")
    op.drop_table("analysis_job_items")
    op.drop_table("analysis_jobs")
    op.drop_table("repositories")
    op.execute("DROP EXTENSION IF EXISTS vector")
