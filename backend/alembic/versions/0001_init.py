"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    def existing_indexes(table: str) -> set[str]:
        if table not in existing_tables:
            return set()
        return {idx["name"] for idx in inspector.get_indexes(table)}

    if "customers" not in existing_tables:
        op.create_table(
            "customers",
            sa.Column("pass_id", sa.String(), primary_key=True),
            sa.Column("shopify_customer_id", sa.String(), nullable=True),
            sa.Column("user_id", sa.String(), nullable=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("preferences", sa.JSON(), nullable=True),
            sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("customers")
    if "ix_customers_pass_id" not in idxs:
        op.create_index("ix_customers_pass_id", "customers", ["pass_id"])
    if "ix_customers_shopify_customer_id" not in idxs:
        op.create_index("ix_customers_shopify_customer_id", "customers", ["shopify_customer_id"])
    if "ix_customers_user_id" not in idxs:
        op.create_index("ix_customers_user_id", "customers", ["user_id"])
    if "ix_customers_email" not in idxs:
        op.create_index("ix_customers_email", "customers", ["email"])

    if "credit_transactions" not in existing_tables:
        op.create_table(
            "credit_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("pass_id", sa.String(), nullable=False),
            sa.Column("delta", sa.Integer(), nullable=False),
            sa.Column("reason", sa.String(), nullable=True),
            sa.Column("source", sa.String(), nullable=True),
            sa.Column("ref_type", sa.String(), nullable=True),
            sa.Column("ref_id", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="succeeded"),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("event_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.UniqueConstraint("ref_type", "ref_id", name="uq_credit_transactions_ref"),
        )
    idxs = existing_indexes("credit_transactions")
    if "ix_credit_transactions_id" not in idxs:
        op.create_index("ix_credit_transactions_id", "credit_transactions", ["id"])
    if "ix_credit_transactions_pass_id" not in idxs:
        op.create_index("ix_credit_transactions_pass_id", "credit_transactions", ["pass_id"])
    if "ix_credit_transactions_source" not in idxs:
        op.create_index("ix_credit_transactions_source", "credit_transactions", ["source"])
    if "ix_credit_transactions_status" not in idxs:
        op.create_index("ix_credit_transactions_status", "credit_transactions", ["status"])

    if "generations" not in existing_tables:
        op.create_table(
            "generations",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("parent_id", sa.String(), nullable=True),
            sa.Column("pass_id", sa.String(), nullable=False),
            sa.Column("mode", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="queued"),
            sa.Column("vars", sa.JSON(), nullable=True),
            sa.Column("output_url", sa.String(), nullable=True),
            sa.Column("prompt", sa.String(), nullable=True),
            sa.Column("error", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("generations")
    if "ix_generations_id" not in idxs:
        op.create_index("ix_generations_id", "generations", ["id"])
    if "ix_generations_parent_id" not in idxs:
        op.create_index("ix_generations_parent_id", "generations", ["parent_id"])
    if "ix_generations_pass_id" not in idxs:
        op.create_index("ix_generations_pass_id", "generations", ["pass_id"])
    if "ix_generations_status" not in idxs:
        op.create_index("ix_generations_status", "generations", ["status"])

    if "generation_steps" not in existing_tables:
        op.create_table(
            "generation_steps",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("generation_id", sa.String(), sa.ForeignKey("generations.id"), nullable=False),
            sa.Column("pass_id", sa.String(), nullable=True),
            sa.Column("step_no", sa.Integer(), nullable=False),
            sa.Column("step_type", sa.String(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.UniqueConstraint("generation_id", "step_no", name="uq_generation_steps_no"),
        )
    idxs = existing_indexes("generation_steps")
    if "ix_generation_steps_id" not in idxs:
        op.create_index("ix_generation_steps_id", "generation_steps", ["id"])
    if "ix_generation_steps_generation_id" not in idxs:
        op.create_index("ix_generation_steps_generation_id", "generation_steps", ["generation_id"])
    if "ix_generation_steps_pass_id" not in idxs:
        op.create_index("ix_generation_steps_pass_id", "generation_steps", ["pass_id"])
    if "ix_generation_steps_step_type" not in idxs:
        op.create_index("ix_generation_steps_step_type", "generation_steps", ["step_type"])


def downgrade() -> None:
    op.drop_index("ix_generation_steps_step_type", table_name="generation_steps")
    op.drop_index("ix_generation_steps_pass_id", table_name="generation_steps")
    op.drop_index("ix_generation_steps_generation_id", table_name="generation_steps")
    op.drop_index("ix_generation_steps_id", table_name="generation_steps")
    op.drop_table("generation_steps")

    op.drop_index("ix_generations_status", table_name="generations")
    op.drop_index("ix_generations_pass_id", table_name="generations")
    op.drop_index("ix_generations_parent_id", table_name="generations")
    op.drop_index("ix_generations_id", table_name="generations")
    op.drop_table("generations")

    op.drop_index("ix_credit_transactions_status", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_source", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_pass_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("ix_customers_email", table_name="customers")
    op.drop_index("ix_customers_user_id", table_name="customers")
    op.drop_index("ix_customers_shopify_customer_id", table_name="customers")
    op.drop_index("ix_customers_pass_id", table_name="customers")
    op.drop_table("customers")
