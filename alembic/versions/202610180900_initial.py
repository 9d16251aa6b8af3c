"""envelopes, transactions and preferences

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "envelopes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("budget", sa.Numeric(14, 2), nullable=False),
        sa.Column("income", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("spent", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("goal", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column(
            "type",
            sa.Enum("normal", "recurring", "persistent", name="envelopetype"),
            nullable=False,
        ),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("envelopes.id", ondelete="SET NULL"),
        ),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expiration_date", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("budget >= 0", name="ck_envelopes_budget_non_negative"),
    )
    op.create_index("ix_envelopes_type_created", "envelopes", ["type", "created_at"])
    op.create_index("ix_envelopes_parent", "envelopes", ["parent_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column(
            "envelope_id",
            sa.Integer(),
            sa.ForeignKey("envelopes.id", ondelete="CASCADE"),
        ),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_envelope_date", "transactions", ["envelope_id", "date"]
    )
    op.create_index("ix_transactions_parent", "transactions", ["parent_id"])

    op.create_table(
        "preferences",
        sa.Column("key", sa.String(length=50), primary_key=True),
        sa.Column("value", sa.String(length=200), nullable=False),
    )


def downgrade():
    op.drop_table("preferences")
    op.drop_index("ix_transactions_parent", table_name="transactions")
    op.drop_index("ix_transactions_envelope_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_envelopes_parent", table_name="envelopes")
    op.drop_index("ix_envelopes_type_created", table_name="envelopes")
    op.drop_table("envelopes")
