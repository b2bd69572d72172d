"""Initial schema.

Revision ID: 001_initial
Revises:
Create Date: 2025-01-01 00:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- app_credentials ---
    op.create_table(
        "app_credentials",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("encrypted_app_id", sa.Text, nullable=False),
        sa.Column("encrypted_app_secret", sa.Text, nullable=False),
        sa.Column("encrypted_redirect_uri", sa.Text, nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False, server_default="Facebook App"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_app_credentials_tenant_id", "app_credentials", ["tenant_id"])
    op.create_index(
        "uq_app_credentials_tenant_active",
        "app_credentials",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    # --- oauth_states ---
    op.create_table(
        "oauth_states",
        sa.Column("token", sa.String(128), primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_oauth_states_tenant_id", "oauth_states", ["tenant_id"])
    op.create_index("ix_oauth_states_expires_at", "oauth_states", ["expires_at"])

    # --- external_accounts ---
    op.create_table(
        "external_accounts",
        sa.Column("tenant_id", sa.String(255), primary_key=True),
        sa.Column("encrypted_access_token", sa.Text, nullable=False),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_user_id", sa.String(255), nullable=False),
        sa.Column("external_user_name", sa.String(255), nullable=True),
        sa.Column("sub_accounts", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("secondary_account_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # --- content_items ---
    content_kind = postgresql.ENUM("media", "post", name="content_kind", create_type=False)
    content_kind.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "content_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("external_id", sa.String(255), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("sub_account_id", sa.String(255), nullable=False),
        sa.Column("kind", content_kind, nullable=False),
        sa.Column("media_type", sa.String(64), nullable=True),
        sa.Column("caption", sa.Text, nullable=True),
        sa.Column("media_url", sa.Text, nullable=True),
        sa.Column("permalink", sa.Text, nullable=False),
        sa.Column("origin_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("children", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_content_items_tenant_id", "content_items", ["tenant_id"])
    op.create_index("ix_content_items_sub_account_id", "content_items", ["sub_account_id"])
    op.create_index("ix_content_items_tenant_origin", "content_items", ["tenant_id", "origin_timestamp"])


def downgrade() -> None:
    op.drop_table("content_items")
    sa.Enum(name="content_kind").drop(op.get_bind(), checkfirst=True)
    op.drop_table("external_accounts")
    op.drop_table("oauth_states")
    op.drop_table("app_credentials")
