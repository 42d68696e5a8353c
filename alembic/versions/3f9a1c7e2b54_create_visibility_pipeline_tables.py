"""create_visibility_pipeline_tables

Revision ID: 3f9a1c7e2b54
Revises:
Create Date: 2026-09-28 10:12:31.418207

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3f9a1c7e2b54"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)
TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", TS, server_default=sa.func.now()),
    )

    op.create_table(
        "entities",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("domain", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(50), nullable=True),
        sa.Column("created_at", TS, server_default=sa.func.now()),
    )
    op.create_index("ix_entities_name", "entities", ["name"])
    # Case-insensitive competitor lookup
    op.create_index("ix_entities_lower_name", "entities", [sa.text("lower(name)")])

    op.create_table(
        "entity_owners",
        sa.Column("entity_id", UUID, sa.ForeignKey("entities.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("tenant_id", UUID, sa.ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("created_at", TS, server_default=sa.func.now()),
    )
    op.create_index("ix_entity_owners_tenant_id", "entity_owners", ["tenant_id"])

    op.create_table(
        "competitor_links",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_id", UUID, sa.ForeignKey("entities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("competitor_id", UUID, sa.ForeignKey("entities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("mentions", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("created_at", TS, server_default=sa.func.now()),
        sa.Column("updated_at", TS, server_default=sa.func.now()),
        sa.UniqueConstraint("entity_id", "competitor_id", name="uq_competitor_link"),
    )
    op.create_index("ix_competitor_links_entity_id", "competitor_links", ["entity_id"])

    op.create_table(
        "prompts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("entity_id", UUID, sa.ForeignKey("entities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("locale", sa.String(10), server_default="US"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", TS, server_default=sa.func.now()),
    )
    op.create_index("ix_prompts_entity_id", "prompts", ["entity_id"])

    op.create_table(
        "tasks",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("prompt_id", UUID, sa.ForeignKey("prompts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("channel", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("raw_payload", postgresql.JSONB(), nullable=True),
        sa.Column("extracted_sentiment", sa.Float(), nullable=True),
        sa.Column("extracted_position", sa.Integer(), nullable=True),
        sa.Column("extracted_competitors", postgresql.JSONB(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_failure_reason", sa.Text(), nullable=True),
        sa.Column("last_failure_at", TS, nullable=True),
        sa.Column("created_at", TS, server_default=sa.func.now()),
        sa.Column("updated_at", TS, server_default=sa.func.now()),
    )
    op.create_index("ix_tasks_status_created", "tasks", ["status", "created_at"])
    op.create_index("ix_tasks_prompt_created", "tasks", ["prompt_id", "created_at"])

    op.create_table(
        "sources",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("url", sa.Text(), nullable=False, unique=True),
        sa.Column("hostname", sa.String(255), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("type", sa.String(50), nullable=True),
        sa.Column("created_at", TS, server_default=sa.func.now()),
    )
    op.create_index("ix_sources_hostname", "sources", ["hostname"])

    op.create_table(
        "task_sources",
        sa.Column("task_id", sa.String(64), sa.ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("source_id", UUID, sa.ForeignKey("sources.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("occurrences", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_task_sources_source_id", "task_sources", ["source_id"])

    op.create_table(
        "metrics_buckets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_id", UUID, sa.ForeignKey("entities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", UUID, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("competitor_id", UUID, sa.ForeignKey("entities.id", ondelete="CASCADE"), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("channel", sa.String(30), nullable=False),
        sa.Column("total_mentions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_results", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_position", sa.Float(), nullable=True),
        sa.Column("position_samples", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_sentiment", sa.Float(), nullable=True),
        sa.Column("sentiment_samples", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("visibility_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", TS, server_default=sa.func.now()),
    )
    op.create_index(
        "uq_metrics_bucket_own",
        "metrics_buckets",
        ["entity_id", "tenant_id", "date", "channel"],
        unique=True,
        postgresql_where=sa.text("competitor_id IS NULL"),
    )
    op.create_index(
        "uq_metrics_bucket_competitor",
        "metrics_buckets",
        ["entity_id", "tenant_id", "competitor_id", "date", "channel"],
        unique=True,
        postgresql_where=sa.text("competitor_id IS NOT NULL"),
    )
    op.create_index("ix_metrics_bucket_tenant_date", "metrics_buckets", ["tenant_id", "entity_id", "date"])

    op.create_table(
        "source_metrics_buckets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_id", UUID, sa.ForeignKey("entities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", UUID, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source_id", UUID, sa.ForeignKey("sources.id", ondelete="CASCADE"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("channel", sa.String(30), nullable=False),
        sa.Column("total_mentions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_prompts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("utilization", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", TS, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "entity_id", "tenant_id", "source_id", "date", "channel", name="uq_source_metrics_bucket"
        ),
    )
    op.create_index("ix_source_metrics_entity_date", "source_metrics_buckets", ["entity_id", "date"])
    op.create_index("ix_source_metrics_updated_at", "source_metrics_buckets", ["updated_at"])

    op.create_table(
        "chart_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_id", UUID, sa.ForeignKey("entities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", UUID, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("view_key", sa.String(40), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=False),
        sa.Column("config", postgresql.JSONB(), nullable=False),
        sa.Column("updated_at", TS, server_default=sa.func.now()),
        sa.UniqueConstraint("entity_id", "tenant_id", "view_key", name="uq_chart_snapshot"),
    )

    op.create_table(
        "aggregation_ledger",
        sa.Column("task_id", sa.String(64), primary_key=True),
        sa.Column("kind", sa.String(30), primary_key=True),
        sa.Column("scope", sa.String(64), primary_key=True),
        sa.Column("created_at", TS, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("aggregation_ledger")
    op.drop_table("chart_snapshots")
    op.drop_table("source_metrics_buckets")
    op.drop_table("metrics_buckets")
    op.drop_table("task_sources")
    op.drop_table("sources")
    op.drop_table("tasks")
    op.drop_table("prompts")
    op.drop_table("competitor_links")
    op.drop_table("entity_owners")
    op.drop_table("entities")
    op.drop_table("tenants")
