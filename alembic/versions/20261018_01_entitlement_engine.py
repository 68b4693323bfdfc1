"""Create entitlement engine tables.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENTITLEMENT_STATES = ("FREE", "TRIALING", "ACTIVE", "PAST_DUE", "CANCELING", "CANCELED")
LEDGER_REASONS = (
    "STARTING_BALANCE",
    "UPLOAD_REWARD",
    "CLAIM_COST",
    "BOOST_COST",
    "DAILY_BONUS",
    "ACHIEVEMENT_REWARD",
    "CLAIM_REFUND",
)


def upgrade() -> None:
    entitlement_state = postgresql.ENUM(*ENTITLEMENT_STATES, name="entitlement_state_enum")
    reward_kind = postgresql.ENUM("BADGE", "ACHIEVEMENT", name="reward_kind_enum")
    ledger_reason = postgresql.ENUM(*LEDGER_REASONS, name="ledger_reason_enum")
    webhook_provider = postgresql.ENUM("STRIPE", name="webhook_provider_enum")
    webhook_outcome = postgresql.ENUM(
        "APPLIED", "STALE", "IGNORED", "REJECTED", "UNRESOLVED", name="webhook_outcome_enum"
    )
    bind = op.get_bind()
    for enum_type in (entitlement_state, reward_kind, ledger_reason, webhook_provider, webhook_outcome):
        enum_type.create(bind, checkfirst=True)

    def existing(enum_type: postgresql.ENUM) -> postgresql.ENUM:
        return postgresql.ENUM(*enum_type.enums, name=enum_type.name, create_type=False)

    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_ref", sa.String(length=128), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("ledger_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_quota_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_quota_limit", sa.Integer(), nullable=False),
        sa.Column("daily_quota_window_start", sa.Date(), nullable=True),
        sa.Column("last_daily_bonus_on", sa.Date(), nullable=True),
        sa.Column("uploads_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claims_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("boosts_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("entitlement", existing(entitlement_state), nullable=False, server_default="FREE"),
        sa.Column("entitlement_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("points >= 0", name="ck_accounts_points_non_negative"),
    )
    op.create_index("ix_accounts_user_ref", "accounts", ["user_ref"], unique=True)

    op.create_table(
        "account_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reward_id", sa.String(length=64), nullable=False),
        sa.Column("kind", existing(reward_kind), nullable=False),
        sa.Column("stat_name", sa.String(length=32), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("bonus_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("granted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("account_id", "reward_id", name="uq_account_rewards_account_reward"),
    )
    op.create_index("ix_account_rewards_account_id", "account_rewards", ["account_id"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", existing(ledger_reason), nullable=False),
        sa.Column("resulting_balance", sa.Integer(), nullable=False),
        sa.Column("reference_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("account_id", "sequence", name="uq_ledger_entries_account_sequence"),
    )
    op.create_index("ix_ledger_entries_account_id", "ledger_entries", ["account_id"])

    op.create_table(
        "subscription_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("external_customer_ref", sa.String(length=128), nullable=True),
        sa.Column("external_subscription_ref", sa.String(length=128), nullable=True),
        sa.Column("state", existing(entitlement_state), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_applied_event_id", sa.String(length=128), nullable=True),
        sa.Column("last_applied_sequence", sa.BigInteger(), nullable=True),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("superseded_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_subscription_records_account_id", "subscription_records", ["account_id"])
    op.create_index("ix_subscription_records_is_current", "subscription_records", ["is_current"])
    op.create_index(
        "uq_subscription_records_current_account",
        "subscription_records",
        ["account_id"],
        unique=True,
        postgresql_where=sa.text("is_current"),
    )
    op.create_index(
        "ix_subscription_records_external_customer_ref", "subscription_records", ["external_customer_ref"]
    )
    op.create_index(
        "ix_subscription_records_external_subscription_ref",
        "subscription_records",
        ["external_subscription_ref"],
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", existing(webhook_provider), nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("sequence", sa.BigInteger(), nullable=True),
        sa.Column("outcome", existing(webhook_outcome), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "external_id", name="uq_webhook_events_provider_external"),
    )
    op.create_index("ix_webhook_events_account_id", "webhook_events", ["account_id"])
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])


def downgrade() -> None:
    op.drop_index("ix_webhook_events_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_account_id", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index("ix_subscription_records_external_subscription_ref", table_name="subscription_records")
    op.drop_index("ix_subscription_records_external_customer_ref", table_name="subscription_records")
    op.drop_index("uq_subscription_records_current_account", table_name="subscription_records")
    op.drop_index("ix_subscription_records_is_current", table_name="subscription_records")
    op.drop_index("ix_subscription_records_account_id", table_name="subscription_records")
    op.drop_table("subscription_records")

    op.drop_index("ix_ledger_entries_account_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")

    op.drop_index("ix_account_rewards_account_id", table_name="account_rewards")
    op.drop_table("account_rewards")

    op.drop_index("ix_accounts_user_ref", table_name="accounts")
    op.drop_table("accounts")

    bind = op.get_bind()
    for name in (
        "webhook_outcome_enum",
        "webhook_provider_enum",
        "ledger_reason_enum",
        "reward_kind_enum",
        "entitlement_state_enum",
    ):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
