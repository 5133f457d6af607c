"""Create change_sets, decisions, export_artifacts and activity_log.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    existing = set(insp.get_table_names())

    if "change_sets" not in existing:
        op.create_table(
            "change_sets",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("audit_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(20), nullable=True, server_default="draft"),
            sa.Column("export_files", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("export_hash", sa.String(64), nullable=True),
            sa.Column("created_by", sa.String(255), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("approved_at", sa.DateTime(), nullable=True),
            sa.Column("exported_at", sa.DateTime(), nullable=True),
            sa.Column("applied_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_change_sets_account_id", "change_sets", ["account_id"], unique=False)
        op.create_index("ix_change_sets_status", "change_sets", ["status"], unique=False)
        op.create_index("ix_change_sets_created_at", "change_sets", ["created_at"], unique=False)

    if "decisions" not in existing:
        op.create_table(
            "decisions",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("decision_group_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("superseded_by", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("audit_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("module_id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(30), nullable=False),
            sa.Column("entity_id", sa.String(100), nullable=False),
            sa.Column("entity_name", sa.String(500), nullable=True),
            sa.Column("action_type", sa.String(50), nullable=False),
            sa.Column("before_value", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("after_value", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("rationale", sa.Text(), nullable=True),
            sa.Column("evidence", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
            sa.Column("change_set_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("exported_at", sa.DateTime(), nullable=True),
            sa.Column("applied_at", sa.DateTime(), nullable=True),
            sa.Column("created_by", sa.String(255), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["change_set_id"], ["change_sets.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("decision_group_id", "version", name="uq_decision_group_version"),
        )
        op.create_index("ix_decisions_account_id", "decisions", ["account_id"], unique=False)
        op.create_index("ix_decisions_group_current", "decisions", ["decision_group_id", "is_current"], unique=False)
        op.create_index("ix_decisions_status", "decisions", ["status"], unique=False)
        op.create_index("ix_decisions_change_set_id", "decisions", ["change_set_id"], unique=False)
        op.create_index("ix_decisions_module_id", "decisions", ["module_id"], unique=False)
        op.create_index("ix_decisions_entity", "decisions", ["entity_type", "entity_id"], unique=False)
        op.create_index("ix_decisions_created_at", "decisions", ["created_at"], unique=False)
        # At most one current row per decision group
        op.create_index(
            "uq_decisions_one_current_per_group",
            "decisions",
            ["decision_group_id"],
            unique=True,
            postgresql_where=sa.text("is_current"),
        )

    if "export_artifacts" not in existing:
        op.create_table(
            "export_artifacts",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("change_set_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("filename", sa.String(512), nullable=False),
            sa.Column("content", sa.LargeBinary(), nullable=False),
            sa.Column("content_hash", sa.String(64), nullable=False),
            sa.Column("manifest", postgresql.JSON(astext_type=sa.Text()), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["change_set_id"], ["change_sets.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("change_set_id", name="uq_export_artifact_change_set"),
        )

    if "activity_log" not in existing:
        op.create_table(
            "activity_log",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("actor", sa.String(255), nullable=True),
            sa.Column("action", sa.String(100), nullable=False),
            sa.Column("category", sa.String(50), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("details", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("entity_type", sa.String(50), nullable=True),
            sa.Column("entity_id", sa.String(255), nullable=True),
            sa.Column("status", sa.String(20), nullable=True, server_default="success"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_activity_log_category", "activity_log", ["category"], unique=False)
        op.create_index("ix_activity_log_action", "activity_log", ["action"], unique=False)
        op.create_index("ix_activity_log_created_at", "activity_log", ["created_at"], unique=False)
        op.create_index("ix_activity_log_entity", "activity_log", ["entity_type", "entity_id"], unique=False)


def downgrade() -> None:
    op.drop_table("activity_log")
    op.drop_table("export_artifacts")
    op.drop_index("uq_decisions_one_current_per_group", table_name="decisions")
    op.drop_table("decisions")
    op.drop_table("change_sets")
