"""initial_schema

Revision ID: 3f9c1a2b7d10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "3f9c1a2b7d10"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=32, create_constraint=True)


def _id() -> sa.Column:
    return sa.Column("id", sa.BigInteger, autoincrement=True, nullable=False)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
    )


def upgrade() -> None:
    # ── Mapping store ─────────────────────────────────────────────────────────
    op.create_table(
        "contact_mappings",
        _id(),
        sa.Column("chatwoot_contact_id", sa.BigInteger, nullable=False),
        sa.Column("krayin_lead_id", sa.BigInteger, nullable=True),
        sa.Column("krayin_person_id", sa.BigInteger, nullable=True),
        sa.Column("contact_name", sa.String(255), nullable=True),
        sa.Column("contact_email", sa.String(255), nullable=True),
        sa.Column("contact_phone", sa.String(50), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chatwoot_contact_id", name="uq_contact_mappings_chatwoot_contact_id"),
        sa.CheckConstraint(
            "krayin_lead_id IS NOT NULL OR krayin_person_id IS NOT NULL",
            name="ck_contact_mappings_has_krayin_id",
        ),
    )
    op.create_index("ix_contact_mappings_krayin_lead_id", "contact_mappings", ["krayin_lead_id"])

    op.create_table(
        "conversation_mappings",
        _id(),
        sa.Column("chatwoot_conversation_id", sa.BigInteger, nullable=False),
        sa.Column("krayin_lead_id", sa.BigInteger, nullable=False),
        sa.Column(
            "status",
            _enum("conversationstatus", "open", "resolved", "pending", "snoozed"),
            server_default="open",
            nullable=False,
        ),
        sa.Column("message_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_response_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "chatwoot_conversation_id", name="uq_conversation_mappings_chatwoot_conversation_id"
        ),
    )
    op.create_index(
        "ix_conversation_mappings_krayin_lead_id", "conversation_mappings", ["krayin_lead_id"]
    )
    op.create_index("ix_conversation_mappings_status", "conversation_mappings", ["status"])

    op.create_table(
        "activity_mappings",
        _id(),
        sa.Column("chatwoot_message_id", sa.BigInteger, nullable=False),
        sa.Column("krayin_activity_id", sa.BigInteger, nullable=False),
        sa.Column("conversation_id", sa.BigInteger, nullable=False),
        sa.Column("krayin_lead_id", sa.BigInteger, nullable=True),
        sa.Column(
            "message_type",
            _enum("messagetype", "incoming", "outgoing", "activity"),
            nullable=False,
        ),
        sa.Column("content_type", sa.String(50), nullable=True),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("sender_name", sa.String(255), nullable=True),
        sa.Column("sender_type", sa.String(50), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chatwoot_message_id", name="uq_activity_mappings_chatwoot_message_id"),
    )
    op.create_index(
        "ix_activity_mappings_conversation_id", "activity_mappings", ["conversation_id"]
    )
    op.create_index("ix_activity_mappings_krayin_lead_id", "activity_mappings", ["krayin_lead_id"])

    op.create_table(
        "stage_change_logs",
        _id(),
        sa.Column("krayin_lead_id", sa.BigInteger, nullable=False),
        sa.Column("chatwoot_conversation_id", sa.BigInteger, nullable=False),
        sa.Column("previous_stage", sa.String(100), nullable=True),
        sa.Column("new_stage", sa.String(100), nullable=False),
        sa.Column("previous_status", sa.String(32), nullable=True),
        sa.Column("new_status", sa.String(32), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("webhook_id", sa.String(100), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column(
            "trigger_source",
            _enum("triggersource", "webhook", "manual", "automation"),
            server_default="webhook",
            nullable=False,
        ),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "webhook_id",
            "chatwoot_conversation_id",
            name="uq_stage_change_logs_webhook_conversation",
        ),
    )
    op.create_index("ix_stage_change_logs_krayin_lead_id", "stage_change_logs", ["krayin_lead_id"])
    op.create_index("ix_stage_change_logs_changed_at", "stage_change_logs", ["changed_at"])

    # ── LGPD ──────────────────────────────────────────────────────────────────
    op.create_table(
        "consent_records",
        _id(),
        sa.Column("contact_id", sa.BigInteger, nullable=False),
        sa.Column(
            "consent_type",
            _enum("consenttype", "data_processing", "marketing", "health_data", "analytics"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _enum("consentstatus", "granted", "denied", "withdrawn", "expired"),
            nullable=False,
        ),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawal_reason", sa.Text, nullable=True),
        sa.Column("consent_text", sa.Text, nullable=True),
        sa.Column("consent_version", sa.String(20), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status != 'granted' OR granted_at IS NOT NULL",
            name="ck_consent_records_granted_at",
        ),
        sa.CheckConstraint(
            "status != 'withdrawn' OR withdrawn_at IS NOT NULL",
            name="ck_consent_records_withdrawn_at",
        ),
    )
    op.create_index(
        "ix_consent_records_contact_type", "consent_records", ["contact_id", "consent_type"]
    )
    op.create_index("ix_consent_records_status", "consent_records", ["status"])

    # ── Audit ─────────────────────────────────────────────────────────────────
    op.create_table(
        "audit_logs",
        _id(),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("model", sa.String(50), nullable=False),
        sa.Column("model_id", sa.String(64), nullable=True),
        sa.Column("changes", JSONType, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_model", "audit_logs", ["model", "model_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    # ── Dead letters ──────────────────────────────────────────────────────────
    op.create_table(
        "failed_webhooks",
        _id(),
        sa.Column("webhook_id", sa.String(100), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("error", sa.Text, nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("webhook_id", name="uq_failed_webhooks_webhook_id"),
    )
    op.create_index("ix_failed_webhooks_event_type", "failed_webhooks", ["event_type"])
    op.create_index("ix_failed_webhooks_failed_at", "failed_webhooks", ["failed_at"])

    op.create_table(
        "failed_data_deletions",
        _id(),
        sa.Column("contact_id", sa.BigInteger, nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("requested_by", sa.String(64), nullable=True),
        sa.Column("error", sa.Text, nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_failed_data_deletions_contact_id", "failed_data_deletions", ["contact_id"]
    )

    op.create_table(
        "failed_data_exports",
        _id(),
        sa.Column("export_id", sa.String(100), nullable=False),
        sa.Column("contact_ids", JSONType, nullable=False),
        sa.Column("format", sa.String(10), nullable=False),
        sa.Column("error", sa.Text, nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failed_data_exports_export_id", "failed_data_exports", ["export_id"])

    op.create_table(
        "failed_audit_logs",
        _id(),
        sa.Column("audit_data", JSONType, nullable=False),
        sa.Column("error", sa.Text, nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    for table in (
        "failed_audit_logs",
        "failed_data_exports",
        "failed_data_deletions",
        "failed_webhooks",
        "audit_logs",
        "consent_records",
        "stage_change_logs",
        "activity_mappings",
        "conversation_mappings",
        "contact_mappings",
    ):
        op.drop_table(table)
