"""Initial schema: products, seller balances, settlements

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Catalog rows are owned by the catalog service; this service only reads them.
    op.create_table(
        "products",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("price_cents", sa.BigInteger, nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("seller_id", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_products_seller_id", "products", ["seller_id"])

    op.create_table(
        "seller_balances",
        sa.Column("seller_id", sa.String(128), primary_key=True),
        sa.Column("balance_cents", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("version", sa.BigInteger, nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.CheckConstraint("balance_cents >= 0", name="ck_seller_balances_non_negative"),
    )

    op.create_table(
        "settlements",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("gateway_order_id", sa.String(128), nullable=False),
        sa.Column("buyer_id", sa.String(128), nullable=False),
        sa.Column("product_id", sa.String(128), nullable=False),
        sa.Column("seller_id", sa.String(128), sa.ForeignKey("seller_balances.seller_id"), nullable=False),
        sa.Column("amount_cents", sa.BigInteger, nullable=False),
        sa.Column("seller_credit_cents", sa.BigInteger, nullable=False),
        sa.Column("commission_cents", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("gateway_order_id", name="uq_settlements_gateway_order_id"),
    )
    op.create_index("ix_settlements_seller_id", "settlements", ["seller_id"])
    op.create_index("ix_settlements_buyer_id", "settlements", ["buyer_id"])
    op.create_index("ix_settlements_settled_at", "settlements", ["settled_at"])


def downgrade() -> None:
    op.drop_table("settlements")
    op.drop_table("seller_balances")
    op.drop_table("products")
