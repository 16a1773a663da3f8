"""Initial schema: one document table per collection, matching db.py models.

Revision ID: 001
Revises: (none)
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _document_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("data", JSONB(), nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # --- flyers ---
    op.create_table("flyers", *_document_columns())

    # --- flyer_items ---
    op.create_table(
        "flyer_items",
        *_document_columns(),
        sa.Column(
            "parent_flyer_id",
            sa.String(255),
            sa.ForeignKey("flyers.id", ondelete="CASCADE"),
            nullable=True,
        ),
    )
    op.create_index("idx_flyer_items_flyer", "flyer_items", ["parent_flyer_id"])

    # --- catalog_entries ---
    op.create_table("catalog_entries", *_document_columns())

    # --- auto_approval_rules ---
    op.create_table("auto_approval_rules", *_document_columns())

    # --- workflow_runs ---
    op.create_table(
        "workflow_runs",
        *_document_columns(),
        sa.Column("status", sa.String(20), nullable=True),
    )
    op.create_index("idx_workflow_runs_status", "workflow_runs", ["status"])

    # --- step_records ---
    op.create_table(
        "step_records",
        *_document_columns(),
        sa.Column(
            "run_id",
            sa.String(255),
            sa.ForeignKey("workflow_runs.id", ondelete="CASCADE"),
            nullable=True,
        ),
    )
    op.create_index("idx_step_records_run", "step_records", ["run_id"])


def downgrade() -> None:
    op.drop_table("step_records")
    op.drop_table("workflow_runs")
    op.drop_table("auto_approval_rules")
    op.drop_table("catalog_entries")
    op.drop_table("flyer_items")
    op.drop_table("flyers")
