"""field pattern overrides and refresh rejection marker

Revision ID: 0002_field_patterns
Revises: 0001_init
Create Date: 2026-10-19 14:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_field_patterns"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Set when the token endpoint rejects the refresh token; cleared by a new handshake.
    op.add_column(
        "stack_credentials",
        sa.Column("refresh_rejected_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "field_pattern_overrides",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("stack_api_key", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(length=100), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("pattern", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "stack_api_key", "content_type", "category", "pattern", name="uq_field_pattern_overrides_key"
        ),
    )
    op.create_index("ix_field_pattern_overrides_stack", "field_pattern_overrides", ["stack_api_key"])


def downgrade() -> None:
    op.drop_index("ix_field_pattern_overrides_stack", table_name="field_pattern_overrides")
    op.drop_table("field_pattern_overrides")
    op.drop_column("stack_credentials", "refresh_rejected_at")
