from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "signature_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("document_ref", sa.String(length=512), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.String(), nullable=True),
        sa.Column("policy", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("initiator_id", sa.String(length=128), nullable=False),
        sa.Column("initiator_email", sa.String(length=320), nullable=True),
        sa.Column("requires_code", sa.Boolean(), nullable=False),
        sa.Column("total_signers", sa.Integer(), nullable=False),
        sa.Column("viewed_count", sa.Integer(), nullable=False),
        sa.Column("signed_count", sa.Integer(), nullable=False),
        sa.Column("declined_count", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("declined_at", sa.DateTime(), nullable=True),
        sa.Column("expired_at", sa.DateTime(), nullable=True),
        sa.Column("artifact_ref", sa.String(length=1024), nullable=True),
        sa.Column("artifact_sha256", sa.String(length=64), nullable=True),
        sa.Column("finalized_at", sa.DateTime(), nullable=True),
        sa.Column("finalization_attempts", sa.Integer(), nullable=False),
        sa.Column("finalization_error", sa.String(), nullable=True),
        sa.Column("warning_sent_at", sa.DateTime(), nullable=True),
        sa.Column("warning_threshold_hours", sa.Integer(), nullable=True),
    )
    op.create_index("ix_signature_requests_id", "signature_requests", ["id"])
    op.create_index("ix_signature_requests_status", "signature_requests", ["status"])
    op.create_index("ix_signature_requests_initiator_id", "signature_requests", ["initiator_id"])
    op.create_index("ix_signature_requests_expires_at", "signature_requests", ["expires_at"])

    op.create_table(
        "signers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("signature_requests.id"), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("signing_order", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("viewed_at", sa.DateTime(), nullable=True),
        sa.Column("signed_at", sa.DateTime(), nullable=True),
        sa.Column("declined_at", sa.DateTime(), nullable=True),
        sa.Column("declined_reason", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("signer_ip", sa.String(length=64), nullable=True),
        sa.Column("signer_user_agent", sa.String(), nullable=True),
        sa.Column("requires_code", sa.Boolean(), nullable=False),
        sa.Column("code_secret", sa.String(length=64), nullable=True),
        sa.Column("notification_channel", sa.String(length=8), nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("reminder_count", sa.Integer(), nullable=False),
        sa.Column("last_reminded_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("request_id", "email", name="uq_signers_request_email"),
    )
    op.create_index("ix_signers_id", "signers", ["id"])
    op.create_index("ix_signers_request_id", "signers", ["request_id"])

    op.create_table(
        "placed_fields",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("signature_requests.id"), nullable=False),
        sa.Column("signer_id", sa.Uuid(), sa.ForeignKey("signers.id"), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("field_type", sa.String(length=16), nullable=False),
        sa.Column("page", sa.Integer(), nullable=False),
        sa.Column("x", sa.Float(), nullable=False),
        sa.Column("y", sa.Float(), nullable=False),
        sa.Column("width", sa.Float(), nullable=False),
        sa.Column("height", sa.Float(), nullable=False),
        sa.Column("label", sa.String(length=128), nullable=True),
        sa.Column("required", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("request_id", "name", name="uq_placed_fields_request_name"),
    )
    op.create_index("ix_placed_fields_id", "placed_fields", ["id"])
    op.create_index("ix_placed_fields_request_id", "placed_fields", ["request_id"])
    op.create_index("ix_placed_fields_signer_id", "placed_fields", ["signer_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("request_id", sa.Uuid(), nullable=True),
        sa.Column("signer_id", sa.Uuid(), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_events_id", "audit_events", ["id"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])
    op.create_index("ix_audit_events_signer_id", "audit_events", ["signer_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])

    op.create_table(
        "verified_sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("signer_id", sa.Uuid(), sa.ForeignKey("signers.id"), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_verified_sessions_id", "verified_sessions", ["id"])
    op.create_index("ix_verified_sessions_signer_id", "verified_sessions", ["signer_id"])
    op.create_index("ix_verified_sessions_token_hash", "verified_sessions", ["token_hash"], unique=True)


def downgrade() -> None:
    op.drop_table("verified_sessions")
    op.drop_table("audit_events")
    op.drop_table("placed_fields")
    op.drop_table("signers")
    op.drop_table("signature_requests")
