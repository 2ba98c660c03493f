from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)
JSONB = postgresql.JSONB()
TS = sa.TIMESTAMP(timezone=True)

def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "user_eligibility",
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("kyc_status", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("kyc_tier", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("withdrawals_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fraud_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", TS, server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "matches",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("creator_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("entry_fee_cents", sa.Integer(), nullable=False),
        sa.Column("min_players", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("max_players", sa.Integer(), nullable=False),
        sa.Column("player_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payout_model", sa.String(length=32), nullable=False, server_default="winner_take_all"),
        sa.Column("payout_config", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("rake_percent", sa.Numeric(5, 2), nullable=False, server_default="5.00"),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("room_code", sa.String(length=12), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="waiting"),
        sa.Column("settlement_failed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("started_at", TS, nullable=True),
        sa.Column("completed_at", TS, nullable=True),
        sa.CheckConstraint("entry_fee_cents > 0", name="ck_match_fee_positive"),
        sa.CheckConstraint("player_count <= max_players", name="ck_match_not_overfilled"),
    )
    op.create_index("ix_matches_creator_id", "matches", ["creator_id"])
    op.create_index("ix_matches_room_code", "matches", ["room_code"], unique=True)
    # the auto-settlement sweep query
    op.create_index("ix_matches_settle_due", "matches", ["status", "settlement_failed", "completed_at"])

    op.create_table(
        "match_players",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("match_id", UUID, sa.ForeignKey("matches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("score", sa.Integer(), nullable=True),
        sa.Column("time_taken_ms", sa.Integer(), nullable=True),
        sa.Column("result", sa.String(length=8), nullable=True),
        sa.Column("payout_cents", sa.Integer(), nullable=True),
        sa.Column("placement", sa.Integer(), nullable=True),
        sa.Column("joined_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("finished_at", TS, nullable=True),
        sa.UniqueConstraint("match_id", "user_id", name="uq_match_player_once"),
    )
    op.create_index("ix_match_players_match_id", "match_players", ["match_id"])
    op.create_index("ix_match_players_user_id", "match_players", ["user_id"])

    op.create_table(
        "escrows",
        sa.Column("match_id", UUID, sa.ForeignKey("matches.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("total_pot_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rake_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("net_pot_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("released_at", TS, nullable=True),
        sa.CheckConstraint("total_pot_cents >= 0", name="ck_escrow_pot_nonneg"),
    )

    op.create_table(
        "wallet_balances",
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("available_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locked_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("available_cents >= 0", name="ck_wallet_available_nonneg"),
        sa.CheckConstraint("locked_cents >= 0", name="ck_wallet_locked_nonneg"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("balance_after_cents", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("match_id", UUID, sa.ForeignKey("matches.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("external_id", name="uq_ledger_external_id"),
        sa.UniqueConstraint("user_id", "match_id", "type", name="uq_ledger_match_once"),
        sa.CheckConstraint(
            "(type IN ('deposit','match_payout','withdrawal_refund') AND amount_cents > 0) OR "
            "(type IN ('withdrawal','match_entry') AND amount_cents < 0)",
            name="ck_ledger_amount_sign",
        ),
    )
    op.create_index("ix_ledger_entries_user_id", "ledger_entries", ["user_id"])
    op.create_index("ix_ledger_entries_user_created", "ledger_entries", ["user_id", "created_at"])

    op.create_table(
        "settlement_attempts",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("match_id", UUID, sa.ForeignKey("matches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("next_retry_at", TS, nullable=True),
        sa.Column("started_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", TS, nullable=True),
        sa.UniqueConstraint("match_id", "attempt_number", name="uq_settlement_attempt_number"),
    )
    op.create_index("ix_settlement_attempts_match_id", "settlement_attempts", ["match_id"])

    op.create_table(
        "settlement_locks",
        sa.Column("match_id", UUID, sa.ForeignKey("matches.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("locked_by", sa.String(length=128), nullable=False),
        sa.Column("locked_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("expires_at", TS, nullable=False),
    )

    op.create_table(
        "withdrawal_requests",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("destination", JSONB, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("requires_manual_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("review_reasons", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("provider_payout_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("reviewed_by", UUID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("reviewed_at", TS, nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", TS, nullable=True),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_withdrawal_idempotency"),
        sa.CheckConstraint("amount_cents > 0", name="ck_withdrawal_amount_positive"),
    )
    op.create_index("ix_withdrawal_requests_user_id", "withdrawal_requests", ["user_id"])

    op.create_table(
        "deposit_intents",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("provider_name", sa.String(length=32), nullable=False, server_default="stripe"),
        sa.Column("provider_intent_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", TS, nullable=True),
    )
    op.create_index("ix_deposit_intents_user_id", "deposit_intents", ["user_id"])

    op.create_table(
        "provider_events",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("provider_name", sa.String(length=32), nullable=False),
        sa.Column("provider_event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("received_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("processed_at", TS, nullable=True),
        sa.UniqueConstraint("provider_name", "provider_event_id", name="uq_provider_event"),
    )

    op.create_table(
        "idempotency_records",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("route", sa.String(length=64), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=False),
        sa.Column("response_body", JSONB, nullable=False),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("key", "user_id", "route", name="uq_idempotency_key_user_route"),
    )

    op.create_table(
        "platform_controls",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("value_cents", sa.Integer(), nullable=True),
        sa.Column("updated_by", UUID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("updated_at", TS, server_default=sa.text("now()"), nullable=False),
    )
    op.execute(
        "INSERT INTO platform_controls (name, enabled) VALUES "
        "('deposits_enabled', true), ('withdrawals_enabled', true), ('settlement_enabled', true)"
    )

    op.create_table(
        "alerts",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("match_id", UUID, nullable=True),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("acknowledged_at", TS, nullable=True),
        sa.Column("acknowledged_by", UUID, nullable=True),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_alerts_type", "alerts", ["type"])
    op.create_index("ix_alerts_user_id", "alerts", ["user_id"])
    op.create_index("ix_alerts_match_id", "alerts", ["match_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("match_id", UUID, nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"])

def downgrade() -> None:
    for table in (
        "audit_events", "alerts", "platform_controls", "idempotency_records", "provider_events",
        "deposit_intents", "withdrawal_requests", "settlement_locks", "settlement_attempts",
        "ledger_entries", "wallet_balances", "escrows", "match_players", "matches",
        "user_eligibility", "users",
    ):
        op.drop_table(table)
