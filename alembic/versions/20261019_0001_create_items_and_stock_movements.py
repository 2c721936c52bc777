"""create items and stock movements

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "items"):
        op.create_table(
            "items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("sku", sa.String(length=100), nullable=False),
            sa.Column("category", sa.String(length=50), nullable=False),
            sa.Column("current_stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("inserted_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_by", sa.String(length=36), nullable=True),
            sa.CheckConstraint("current_stock >= 0", name="ck_items_current_stock_non_negative"),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "stock_movements"):
        # No foreign key: movements outlive the items they describe.
        op.create_table(
            "stock_movements",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("item_id", sa.String(length=36), nullable=False),
            sa.Column("quantity_change", sa.Integer(), nullable=False),
            sa.Column("performed_by", sa.String(length=36), nullable=True),
            sa.Column("performed_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint(
                "quantity_change <> 0", name="ck_stock_movements_quantity_change_non_zero"
            ),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    if not _index_exists(inspector, "items", "ix_items_inserted_at"):
        op.create_index("ix_items_inserted_at", "items", ["inserted_at"], unique=False)
    if not _index_exists(inspector, "items", "ix_items_category_inserted_at"):
        op.create_index(
            "ix_items_category_inserted_at", "items", ["category", "inserted_at"], unique=False
        )
    if not _index_exists(inspector, "stock_movements", "ix_stock_movements_item_id"):
        op.create_index("ix_stock_movements_item_id", "stock_movements", ["item_id"], unique=False)
    if not _index_exists(inspector, "stock_movements", "ix_stock_movements_item_performed_at"):
        op.create_index(
            "ix_stock_movements_item_performed_at",
            "stock_movements",
            ["item_id", "performed_at"],
            unique=False,
        )
    if not _index_exists(inspector, "stock_movements", "ix_stock_movements_performed_at"):
        op.create_index(
            "ix_stock_movements_performed_at", "stock_movements", ["performed_at"], unique=False
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if _table_exists(inspector, "stock_movements"):
        for index_name in (
            "ix_stock_movements_performed_at",
            "ix_stock_movements_item_performed_at",
            "ix_stock_movements_item_id",
        ):
            if _index_exists(inspector, "stock_movements", index_name):
                op.drop_index(index_name, table_name="stock_movements")
        op.drop_table("stock_movements")

    if _table_exists(inspector, "items"):
        for index_name in ("ix_items_category_inserted_at", "ix_items_inserted_at"):
            if _index_exists(inspector, "items", index_name):
                op.drop_index(index_name, table_name="items")
        op.drop_table("items")
