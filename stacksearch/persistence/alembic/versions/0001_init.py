"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "stack_credentials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("stack_api_key", sa.String(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("token_type", sa.String(), nullable=False, server_default="Bearer"),
        sa.Column("organization_uid", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Unique key enforces one credential row per stack.
    op.create_index("ix_stack_credentials_stack_api_key", "stack_credentials", ["stack_api_key"], unique=True)
    # Serves the refresh sweep candidate query.
    op.create_index("ix_stack_credentials_active_expires", "stack_credentials", ["is_active", "expires_at"])

    op.create_table(
        "search_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("stack_api_key", sa.String(), nullable=False),
        sa.Column("query", sa.String(length=500), nullable=False),
        sa.Column("search_type", sa.String(), nullable=False, server_default="semantic"),
        sa.Column("results_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("latency_ms", sa.Float(), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("environment", sa.String(), nullable=True),
        sa.Column("filters_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_search_logs_created_at", "search_logs", ["created_at"])
    op.create_index("ix_search_logs_stack_created", "search_logs", ["stack_api_key", "created_at"])
    op.create_index("ix_search_logs_success_created", "search_logs", ["success", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_search_logs_success_created", table_name="search_logs")
    op.drop_index("ix_search_logs_stack_created", table_name="search_logs")
    op.drop_index("ix_search_logs_created_at", table_name="search_logs")
    op.drop_table("search_logs")
    op.drop_index("ix_stack_credentials_active_expires", table_name="stack_credentials")
    op.drop_index("ix_stack_credentials_stack_api_key", table_name="stack_credentials")
    op.drop_table("stack_credentials")
