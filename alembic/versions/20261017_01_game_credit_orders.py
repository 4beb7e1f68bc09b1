"""game credit orders schema

Revision ID: 20261017_01
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _timestamps(with_updated_at: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if with_updated_at:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()))
    return columns


def _create_users(inspector: sa.Inspector) -> None:
    if _table_exists(inspector, "users"):
        return
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("wallet_address", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        *_timestamps(with_updated_at=False),
    )
    op.create_index("ix_users_id", "users", ["id"], unique=False)
    op.create_index("ix_users_wallet_address", "users", ["wallet_address"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)


def _create_orders(inspector: sa.Inspector) -> None:
    if _table_exists(inspector, "orders"):
        return
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("order_number", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("order_type", sa.String(length=32), nullable=False, server_default="topup"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("original_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
        sa.Column("crypto_amount", sa.Numeric(24, 9), nullable=True),
        sa.Column("crypto_currency", sa.String(length=16), nullable=False, server_default="SOL"),
        sa.Column("product_id", sa.String(length=64), nullable=True),
        sa.Column("product_item_id", sa.String(length=64), nullable=True),
        sa.Column("product_title", sa.String(length=255), nullable=True),
        sa.Column("user_data", sa.JSON(), nullable=True),
        sa.Column("tracking_number", sa.String(length=128), nullable=True),
        sa.Column("invoice_id", sa.String(length=128), nullable=True),
        sa.Column("needs_reconciliation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("vendor_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_id", "orders", ["id"], unique=False)
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_user_id", "orders", ["user_id"], unique=False)
    op.create_index("ix_orders_status", "orders", ["status"], unique=False)
    op.create_index("ix_orders_tracking_number", "orders", ["tracking_number"], unique=False)


def _create_crypto_transactions(inspector: sa.Inspector) -> None:
    if _table_exists(inspector, "crypto_transactions"):
        return
    op.create_table(
        "crypto_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False, unique=True),
        sa.Column("transaction_signature", sa.String(length=128), nullable=False),
        sa.Column("wallet_from", sa.String(length=64), nullable=True),
        sa.Column("wallet_to", sa.String(length=64), nullable=True),
        sa.Column("amount", sa.Numeric(24, 9), nullable=True),
        sa.Column("token", sa.String(length=16), nullable=False, server_default="SOL"),
        sa.Column("network", sa.String(length=32), nullable=False, server_default="solana"),
        sa.Column("decimals", sa.Integer(), nullable=False, server_default="9"),
        sa.Column("transaction_type", sa.String(length=16), nullable=False, server_default="payment"),
        sa.Column("direction", sa.String(length=16), nullable=False, server_default="inbound"),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("confirmations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gas_fee", sa.Numeric(24, 9), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_crypto_transactions_id", "crypto_transactions", ["id"], unique=False)
    op.create_index(
        "ix_crypto_transactions_transaction_signature",
        "crypto_transactions",
        ["transaction_signature"],
        unique=True,
    )


def _create_logs(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "vendor_transaction_logs"):
        op.create_table(
            "vendor_transaction_logs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("vendor_name", sa.String(length=64), nullable=False),
            sa.Column("request_body", sa.Text(), nullable=True),
            sa.Column("response_body", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(with_updated_at=False),
        )
        op.create_index("ix_vendor_transaction_logs_id", "vendor_transaction_logs", ["id"], unique=False)
        op.create_index(
            "ix_vendor_transaction_logs_order_id", "vendor_transaction_logs", ["order_id"], unique=False
        )

    if not _table_exists(inspector, "verification_caches"):
        op.create_table(
            "verification_caches",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("transaction_signature", sa.String(length=128), nullable=False),
            sa.Column("verification_status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("confirmations", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(with_updated_at=False),
        )
        op.create_index("ix_verification_caches_id", "verification_caches", ["id"], unique=False)
        op.create_index("ix_verification_caches_order_id", "verification_caches", ["order_id"], unique=False)
        op.create_index(
            "ix_verification_caches_transaction_signature",
            "verification_caches",
            ["transaction_signature"],
            unique=True,
        )

    if not _table_exists(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("action", sa.String(length=64), nullable=False),
            sa.Column("auditable_type", sa.String(length=64), nullable=True),
            sa.Column("auditable_id", sa.Integer(), nullable=True),
            sa.Column("old_values", sa.JSON(), nullable=True),
            sa.Column("new_values", sa.JSON(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            *_timestamps(with_updated_at=False),
        )
        op.create_index("ix_audit_logs_id", "audit_logs", ["id"], unique=False)
        op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"], unique=False)
        op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)


def _create_background_jobs(inspector: sa.Inspector) -> None:
    if _table_exists(inspector, "background_jobs"):
        return
    op.create_table(
        "background_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_background_jobs_id", "background_jobs", ["id"], unique=False)
    op.create_index("ix_background_jobs_name", "background_jobs", ["name"], unique=False)
    op.create_index("ix_background_jobs_status", "background_jobs", ["status"], unique=False)
    op.create_index("ix_background_jobs_run_at", "background_jobs", ["run_at"], unique=False)


def upgrade() -> None:
    bind = op.get_bind()
    _create_users(sa.inspect(bind))
    _create_orders(sa.inspect(bind))
    _create_crypto_transactions(sa.inspect(bind))
    _create_logs(sa.inspect(bind))
    _create_background_jobs(sa.inspect(bind))


def downgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    for table_name in (
        "background_jobs",
        "audit_logs",
        "verification_caches",
        "vendor_transaction_logs",
        "crypto_transactions",
        "orders",
        "users",
    ):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
