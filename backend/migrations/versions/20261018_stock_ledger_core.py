"""Stock ledger, lots, production batches, waste/transfer tracking

Revision ID: 20261018_stock_ledger_core
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_stock_ledger_core"
down_revision = None
branch_labels = None
depends_on = None


QUANTITY = sa.Numeric(14, 3)


def _lot_columns():
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("lot_code", sa.String(32), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("quantity_received", QUANTITY, nullable=False),
        sa.Column("quantity_available", QUANTITY, nullable=False, server_default=sa.text("0")),
        sa.Column("received_date", sa.Date(), nullable=False),
        sa.Column("supplier_id", sa.Integer(), nullable=True),
        sa.Column("handover_to", sa.Integer(), nullable=True),
        sa.Column("amount_paid", sa.Numeric(14, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
    ]


def _lot_indexes(table):
    with op.batch_alter_table(table, schema=None) as batch_op:
        batch_op.create_index(f"ix_{table}_lot_code", ["lot_code"], unique=True)
        batch_op.create_index(f"ix_{table}_received_date", ["received_date"], unique=False)
        batch_op.create_index(f"ix_{table}_supplier_id", ["supplier_id"], unique=False)
        batch_op.create_index(f"ix_{table}_is_archived", ["is_archived"], unique=False)


def upgrade():
    op.create_table(
        "raw_materials",
        *_lot_columns(),
        sa.Column("condition", sa.String(64), nullable=True),
        sa.Column("storage_notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    _lot_indexes("raw_materials")

    op.create_table(
        "recurring_products",
        *_lot_columns(),
        sa.Column("category", sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    _lot_indexes("recurring_products")

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_type", sa.String(32), nullable=False),
        sa.Column("item_reference", sa.Integer(), nullable=False),
        sa.Column("lot_reference", sa.String(32), nullable=True),
        sa.Column("movement_type", sa.String(16), nullable=False),
        sa.Column("quantity", QUANTITY, nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("effective_date", sa.Date(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("reference_type", sa.String(32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        sa.CheckConstraint(
            "movement_type IN ('IN', 'CONSUMPTION', 'WASTE', 'TRANSFER_OUT', 'TRANSFER_IN')",
            name="ck_stock_movements_movement_type",
        ),
        sa.CheckConstraint(
            "item_type IN ('raw_material', 'recurring_product')",
            name="ck_stock_movements_item_type",
        ),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_movements", schema=None) as batch_op:
        batch_op.create_index("ix_stock_movements_item", ["item_type", "item_reference"], unique=False)
        batch_op.create_index(
            "ix_stock_movements_item_order",
            ["item_type", "item_reference", "effective_date", "recorded_at"],
            unique=False,
        )
        batch_op.create_index("ix_stock_movements_reference", ["reference_type", "reference_id"], unique=False)
        batch_op.create_index("ix_stock_movements_lot_reference", ["lot_reference"], unique=False)
        batch_op.create_index("ix_stock_movements_movement_type", ["movement_type"], unique=False)
        batch_op.create_index("ix_stock_movements_effective_date", ["effective_date"], unique=False)

    op.create_table(
        "production_batches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_code", sa.String(32), nullable=False),
        sa.Column("batch_date", sa.Date(), nullable=False),
        sa.Column("responsible_user_id", sa.Integer(), nullable=True),
        sa.Column("qa_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("qa_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("production_start_date", sa.Date(), nullable=True),
        sa.Column("production_end_date", sa.Date(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint(
            "qa_status IN ('pending', 'approved', 'rejected', 'hold')",
            name="ck_production_batches_qa_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("production_batches", schema=None) as batch_op:
        batch_op.create_index("ix_production_batches_batch_code", ["batch_code"], unique=True)
        batch_op.create_index("ix_production_batches_qa_status", ["qa_status"], unique=False)
        batch_op.create_index("ix_production_batches_is_locked", ["is_locked"], unique=False)
        batch_op.create_index("ix_production_batches_date_created", ["batch_date", "created_at"], unique=False)

    op.create_table(
        "batch_consumed_materials",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("item_type", sa.String(32), nullable=False),
        sa.Column("item_reference", sa.Integer(), nullable=False),
        sa.Column("lot_code", sa.String(32), nullable=False),
        sa.Column("material_name", sa.String(255), nullable=False),
        sa.Column("quantity_consumed", QUANTITY, nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("consumption_movement_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["production_batches.id"]),
        sa.ForeignKeyConstraint(["consumption_movement_id"], ["stock_movements.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("batch_consumed_materials", schema=None) as batch_op:
        batch_op.create_index("ix_batch_consumed_materials_batch_id", ["batch_id"], unique=False)
        batch_op.create_index("ix_batch_consumed_item", ["item_type", "item_reference"], unique=False)

    op.create_table(
        "batch_outputs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("output_name", sa.String(255), nullable=True),
        sa.Column("output_size", QUANTITY, nullable=True),
        sa.Column("output_size_unit", sa.String(16), nullable=True),
        sa.Column("produced_quantity", QUANTITY, nullable=True),
        sa.Column("produced_unit", sa.String(16), nullable=True),
        sa.Column("produced_goods_tag_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["production_batches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("batch_outputs", schema=None) as batch_op:
        batch_op.create_index("ix_batch_outputs_batch_id", ["batch_id"], unique=False)

    op.create_table(
        "processed_goods",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("batch_output_id", sa.Integer(), nullable=True),
        sa.Column("batch_code", sa.String(32), nullable=False),
        sa.Column("product_type", sa.String(255), nullable=False),
        sa.Column("quantity_created", QUANTITY, nullable=False),
        sa.Column("quantity_available", QUANTITY, nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("production_date", sa.Date(), nullable=False),
        sa.Column("qa_status", sa.String(16), nullable=False),
        sa.Column("output_size", QUANTITY, nullable=True),
        sa.Column("output_size_unit", sa.String(16), nullable=True),
        sa.Column("produced_goods_tag_id", sa.String(64), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["production_batches.id"]),
        sa.ForeignKeyConstraint(["batch_output_id"], ["batch_outputs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_output_id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("processed_goods", schema=None) as batch_op:
        batch_op.create_index("ix_processed_goods_batch_id", ["batch_id"], unique=False)
        batch_op.create_index("ix_processed_goods_batch_code", ["batch_code"], unique=False)

    op.create_table(
        "waste_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("waste_code", sa.String(32), nullable=False),
        sa.Column("lot_type", sa.String(32), nullable=False),
        sa.Column("lot_id", sa.Integer(), nullable=False),
        sa.Column("lot_code", sa.String(32), nullable=False),
        sa.Column("quantity_wasted", QUANTITY, nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("waste_date", sa.Date(), nullable=False),
        sa.Column("affects_locked_batch", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("quantity_wasted > 0", name="ck_waste_records_quantity_positive"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("waste_records", schema=None) as batch_op:
        batch_op.create_index("ix_waste_records_waste_code", ["waste_code"], unique=True)
        batch_op.create_index("ix_waste_records_lot", ["lot_type", "lot_id"], unique=False)

    op.create_table(
        "transfer_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transfer_code", sa.String(32), nullable=False),
        sa.Column("lot_type", sa.String(32), nullable=False),
        sa.Column("from_lot_id", sa.Integer(), nullable=False),
        sa.Column("from_lot_code", sa.String(32), nullable=False),
        sa.Column("to_lot_id", sa.Integer(), nullable=False),
        sa.Column("to_lot_code", sa.String(32), nullable=False),
        sa.Column("quantity_transferred", QUANTITY, nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("transfer_date", sa.Date(), nullable=False),
        sa.Column("affects_locked_batch", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("quantity_transferred > 0", name="ck_transfer_records_quantity_positive"),
        sa.CheckConstraint("from_lot_id <> to_lot_id", name="ck_transfer_records_distinct_lots"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("transfer_records", schema=None) as batch_op:
        batch_op.create_index("ix_transfer_records_transfer_code", ["transfer_code"], unique=True)
        batch_op.create_index("ix_transfer_records_from", ["lot_type", "from_lot_id"], unique=False)
        batch_op.create_index("ix_transfer_records_to", ["lot_type", "to_lot_id"], unique=False)

    op.create_table(
        "identifier_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("category"),
        sqlite_autoincrement=True,
    )


def downgrade():
    op.drop_table("identifier_sequences")
    op.drop_table("transfer_records")
    op.drop_table("waste_records")
    op.drop_table("processed_goods")
    op.drop_table("batch_outputs")
    op.drop_table("batch_consumed_materials")
    op.drop_table("production_batches")
    op.drop_table("stock_movements")
    op.drop_table("recurring_products")
    op.drop_table("raw_materials")
