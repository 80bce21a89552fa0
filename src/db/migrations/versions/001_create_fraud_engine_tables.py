"""Create the fraud engine tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, nullable: bool = True, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kwargs)


def upgrade() -> None:
    op.create_table(
        "fraud_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("conditions", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("action", sa.String(), nullable=False, server_default="flag"),
        sa.Column("severity", sa.String(), nullable=False, server_default="medium"),
        sa.Column("score_impact", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("applicable_order_types", postgresql.JSONB(), nullable=True),
        sa.Column("applicable_user_roles", postgresql.JSONB(), nullable=True),
        sa.Column("trigger_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("false_positive_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("last_triggered_at"),
        sa.Column("created_by", sa.String(), nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("updated_at"),
    )
    op.create_index(op.f("ix_fraud_rules_rule_type"), "fraud_rules", ["rule_type"])
    op.create_index(op.f("ix_fraud_rules_is_active"), "fraud_rules", ["is_active"])

    op.create_table(
        "user_risk_scores",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("risk_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("risk_level", sa.String(), nullable=False, server_default="low"),
        sa.Column("factors", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("flag_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("confirmed_fraud_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dismissed_alert_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("blocked_at"),
        sa.Column("blocked_by", sa.String(), nullable=True),
        sa.Column("blocked_reason", sa.Text(), nullable=True),
        _ts("unblock_at"),
        _ts("last_calculated"),
        _ts("updated_at"),
        sa.CheckConstraint("risk_score >= 0 AND risk_score <= 100", name="ck_risk_score_range"),
    )
    op.create_index(
        op.f("ix_user_risk_scores_user_id"), "user_risk_scores", ["user_id"], unique=True
    )
    op.create_index(op.f("ix_user_risk_scores_is_blocked"), "user_risk_scores", ["is_blocked"])

    op.create_table(
        "fraud_alerts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("rule_id", sa.String(), nullable=True),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("risk_score", sa.Float(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("reviewed_by", sa.String(), nullable=True),
        _ts("reviewed_at"),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("user_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("order_cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refund_issued", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
    )
    for column in ("user_id", "order_id", "severity", "status", "created_at"):
        op.create_index(op.f(f"ix_fraud_alerts_{column}"), "fraud_alerts", [column])

    op.create_table(
        "device_fingerprints",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("fingerprint_hash", sa.String(), nullable=False),
        sa.Column("device_info", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("ip_address", sa.String(), nullable=True),
        _ts("first_seen", nullable=False),
        _ts("last_seen", nullable=False),
        sa.Column("session_count", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("user_id", "fingerprint_hash", name="uq_device_user_fingerprint"),
    )
    for column in ("user_id", "fingerprint_hash", "last_seen"):
        op.create_index(
            op.f(f"ix_device_fingerprints_{column}"), "device_fingerprints", [column]
        )

    op.create_table(
        "fraud_check_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("check_type", sa.String(), nullable=False),
        sa.Column("input_data", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("risk_score", sa.Float(), nullable=False),
        sa.Column("risk_level", sa.String(), nullable=False),
        sa.Column("triggered_rules", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("recommendation", sa.String(), nullable=False),
        sa.Column("final_decision", sa.String(), nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("device_fingerprint", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
    )
    for column in ("user_id", "check_type", "risk_level", "created_at"):
        op.create_index(op.f(f"ix_fraud_check_logs_{column}"), "fraud_check_logs", [column])

    op.create_table(
        "ip_intelligence_cache",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("ip_address", sa.String(), nullable=False),
        sa.Column("is_vpn", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_proxy", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("country_name", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=True),
        _ts("fetched_at", nullable=False),
        _ts("expires_at", nullable=False),
    )
    op.create_index(
        op.f("ix_ip_intelligence_cache_ip_address"),
        "ip_intelligence_cache",
        ["ip_address"],
        unique=True,
    )
    op.create_index(
        op.f("ix_ip_intelligence_cache_expires_at"), "ip_intelligence_cache", ["expires_at"]
    )


def downgrade() -> None:
    for table in (
        "ip_intelligence_cache",
        "fraud_check_logs",
        "device_fingerprints",
        "fraud_alerts",
        "user_risk_scores",
        "fraud_rules",
    ):
        op.drop_table(table)
