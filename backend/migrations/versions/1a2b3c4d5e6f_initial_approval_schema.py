"""Initial approval schema: action types, requests, approvers, transitions.

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "1a2b3c4d5e6f"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "action_types" not in existing_tables:
        op.create_table(
            "action_types",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("code", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("description", sa.String(), server_default="", nullable=False),
            sa.Column("strategy", sa.String(), server_default="simple", nullable=False),
            sa.Column("min_approvers", sa.Integer(), server_default="1", nullable=False),
            sa.Column("allow_self_approval", sa.Boolean(), server_default=sa.false(), nullable=False),
            sa.Column("auto_approval_profiles", sa.JSON(), nullable=True),
            sa.Column("execution_method", sa.String(), server_default="", nullable=False),
            sa.Column("deadline_hours", sa.Float(), nullable=True),
            sa.Column("escalation_policy", sa.JSON(), nullable=True),
            sa.Column("active", sa.Boolean(), server_default=sa.true(), nullable=False),
            sa.Column("policy_version", sa.Integer(), server_default="1", nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_action_types_code", "action_types", ["code"], unique=True)
        op.create_index("ix_action_types_active", "action_types", ["active"])

    if "approval_requests" not in existing_tables:
        op.create_table(
            "approval_requests",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("code", sa.String(), nullable=False),
            sa.Column("action_type_id", sa.Uuid(), nullable=False),
            sa.Column("requester_id", sa.Uuid(), nullable=False),
            sa.Column("requester_name", sa.String(), server_default="", nullable=False),
            sa.Column("requester_email", sa.String(), server_default="", nullable=False),
            sa.Column("requester_profile", sa.String(), server_default="", nullable=False),
            sa.Column("justification", sa.String(), nullable=False),
            sa.Column("action_payload", sa.Text(), nullable=False),
            sa.Column("execution_method", sa.String(), nullable=False),
            sa.Column("target_ref", sa.String(), nullable=True),
            sa.Column("status", sa.String(), server_default="pending", nullable=False),
            sa.Column("deadline", sa.DateTime(), nullable=True),
            sa.Column("reminder_count", sa.Integer(), server_default="0", nullable=False),
            sa.Column("last_reminder_at", sa.DateTime(), nullable=True),
            sa.Column("escalation_count", sa.Integer(), server_default="0", nullable=False),
            sa.Column("last_escalation_at", sa.DateTime(), nullable=True),
            sa.Column("attachments", sa.JSON(), nullable=True),
            sa.Column("notes", sa.String(), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("executed_at", sa.DateTime(), nullable=True),
            sa.Column("execution_error", sa.String(), nullable=True),
            sa.Column("execution_result", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), server_default="1", nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["action_type_id"], ["action_types.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_requests_code", "approval_requests", ["code"], unique=True)
        op.create_index(
            "ix_approval_requests_action_type_id", "approval_requests", ["action_type_id"]
        )
        op.create_index("ix_approval_requests_requester_id", "approval_requests", ["requester_id"])
        op.create_index("ix_approval_requests_target_ref", "approval_requests", ["target_ref"])
        op.create_index("ix_approval_requests_status", "approval_requests", ["status"])
        op.create_index("ix_approval_requests_deadline", "approval_requests", ["deadline"])
        op.create_index("ix_approval_requests_created_at", "approval_requests", ["created_at"])

    if "approvers" not in existing_tables:
        op.create_table(
            "approvers",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("user_id", sa.Uuid(), nullable=False),
            sa.Column("action_type_id", sa.Uuid(), nullable=True),
            sa.Column("request_id", sa.Uuid(), nullable=True),
            sa.Column("source", sa.String(), server_default="standing", nullable=False),
            sa.Column("decision", sa.String(), nullable=True),
            sa.Column("justification", sa.String(), server_default="", nullable=False),
            sa.Column("decided_at", sa.DateTime(), nullable=True),
            sa.Column("attachments", sa.JSON(), nullable=True),
            sa.Column("active", sa.Boolean(), server_default=sa.true(), nullable=False),
            sa.Column("late", sa.Boolean(), server_default=sa.false(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["action_type_id"], ["action_types.id"]),
            sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approvers_user_id", "approvers", ["user_id"])
        op.create_index("ix_approvers_action_type_id", "approvers", ["action_type_id"])
        op.create_index("ix_approvers_request_id", "approvers", ["request_id"])
        op.create_index("ix_approvers_decision", "approvers", ["decision"])
        op.create_index("ix_approvers_active", "approvers", ["active"])

    if "approval_transitions" not in existing_tables:
        op.create_table(
            "approval_transitions",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("request_id", sa.Uuid(), nullable=False),
            sa.Column("from_status", sa.String(), nullable=True),
            sa.Column("to_status", sa.String(), nullable=False),
            sa.Column("actor_id", sa.Uuid(), nullable=True),
            sa.Column("actor_type", sa.String(), server_default="user", nullable=False),
            sa.Column("reason", sa.String(), server_default="", nullable=False),
            sa.Column("tally", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_approval_transitions_request_id", "approval_transitions", ["request_id"]
        )
        op.create_index(
            "ix_approval_transitions_created_at", "approval_transitions", ["created_at"]
        )


def downgrade() -> None:
    op.drop_table("approval_transitions")
    op.drop_table("approvers")
    op.drop_table("approval_requests")
    op.drop_table("action_types")
