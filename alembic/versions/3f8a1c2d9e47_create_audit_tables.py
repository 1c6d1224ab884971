"""create audit tables

Revision ID: 3f8a1c2d9e47
Revises:
Create Date: 2026-10-17 09:12:40.215311
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3f8a1c2d9e47"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("action_type", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("target_resource", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("ip_address", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("session_id", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("location", sa.String(length=256), nullable=True),
        sa.Column("risk_level", sa.String(length=32), nullable=True),
        sa.Column("contains_sensitive_data", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("data_hash", sa.Text, nullable=True),
        sa.Column("retention_category", sa.String(length=16), nullable=False, server_default="Operational"),
    )
    op.create_index("ix_audit_events_timestamp", "audit_events", ["timestamp"])
    op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"])
    op.create_index("ix_audit_events_action_type", "audit_events", ["action_type"])
    op.create_index("ix_audit_events_target_resource", "audit_events", ["target_resource"])
    op.create_index("ix_audit_events_status", "audit_events", ["status"])
    op.create_index("ix_audit_events_session_id", "audit_events", ["session_id"])
    op.create_index("ix_audit_events_correlation_id", "audit_events", ["correlation_id"])
    op.create_index("ix_audit_events_risk_level", "audit_events", ["risk_level"])
    op.create_index(
        "ix_audit_events_retention_timestamp",
        "audit_events",
        ["retention_category", "timestamp"],
    )

    op.create_table(
        "pseudonymization_mappings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("pseudonymized_value", sa.String(length=64), nullable=False, unique=True),
        sa.Column("original_value", sa.Text, nullable=False),
        sa.Column("field_name", sa.String(length=128), nullable=False),
        sa.Column("method", sa.String(length=64), nullable=False, server_default="DeterministicHash"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("can_be_reversed", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("context", sa.JSON, nullable=False),
    )
    op.create_index(
        "ix_pseudonymization_mappings_expires_at",
        "pseudonymization_mappings",
        ["expires_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_pseudonymization_mappings_expires_at", table_name="pseudonymization_mappings")
    op.drop_table("pseudonymization_mappings")
    for index_name in (
        "ix_audit_events_retention_timestamp",
        "ix_audit_events_risk_level",
        "ix_audit_events_correlation_id",
        "ix_audit_events_session_id",
        "ix_audit_events_status",
        "ix_audit_events_target_resource",
        "ix_audit_events_action_type",
        "ix_audit_events_user_id",
        "ix_audit_events_timestamp",
    ):
        op.drop_index(index_name, table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("scheduler_locks")
    op.drop_table("api_keys")
