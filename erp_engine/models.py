from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from erp_engine.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
QTY_TYPE = Numeric(14, 3)
MONEY_TYPE = Numeric(14, 2)


# --- read-only master data -------------------------------------------------


class Branch(Base):
    __tablename__ = "branch"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    code: Mapped[str | None] = mapped_column(String(20), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Category(Base):
    __tablename__ = "category"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)


class Unit(Base):
    __tablename__ = "unit"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    abbreviation: Mapped[str] = mapped_column(String(16), nullable=False)


class Product(Base):
    __tablename__ = "product"
    __table_args__ = (
        CheckConstraint(
            "product_type IN ('standard', 'raw_tracked', 'manufactured_virtual')",
            name="ck_product_type",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    product_type: Mapped[str] = mapped_column(String(32), nullable=False, default="standard")
    selling_price: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    category_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("category.id"))
    unit_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("unit.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


# A product with no rows here is sold in every branch.
product_branch = Table(
    "product_branch",
    Base.metadata,
    Column("product_id", BigInteger, ForeignKey("product.id"), primary_key=True),
    Column("branch_id", BigInteger, ForeignKey("branch.id"), primary_key=True),
)


class BatchType(Base):
    __tablename__ = "batch_type"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Recipe(Base):
    __tablename__ = "recipe"
    __table_args__ = (
        CheckConstraint("conversion_factor > 0", name="ck_recipe_conversion_positive"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    virtual_product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("product.id"), nullable=False, unique=True
    )
    raw_product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("product.id"), nullable=False
    )
    conversion_factor: Mapped[Numeric] = mapped_column(Numeric(14, 4), nullable=False)
    wastage_margin: Mapped[Numeric] = mapped_column(Numeric(6, 2), nullable=False, default=0)


# --- contacts and stock ----------------------------------------------------


class Contact(Base):
    __tablename__ = "contact"
    __table_args__ = (
        CheckConstraint("contact_type IN ('customer', 'supplier')", name="ck_contact_type"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    contact_type: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32))
    ledger_balance: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)


class InventoryBatch(Base):
    __tablename__ = "inventory_batch"
    __table_args__ = (
        CheckConstraint("remaining_quantity >= 0", name="ck_batch_remaining_nonnegative"),
        CheckConstraint(
            "status IN ('in_stock', 'depleted', 'scrapped')", name="ck_batch_status"
        ),
        Index("ix_batch_product_branch_status", "product_id", "branch_id", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("product.id"), nullable=False)
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("branch.id"), nullable=False)
    batch_type_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("batch_type.id"))
    instance_code: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    initial_quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    remaining_quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="in_stock")
    purchase_item_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class StockAdjustment(Base):
    __tablename__ = "stock_adjustment"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("inventory_batch.id"), nullable=False
    )
    old_quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    new_quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class StockTransfer(Base):
    __tablename__ = "stock_transfer"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("inventory_batch.id"), nullable=False
    )
    from_branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("branch.id"), nullable=False)
    to_branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("branch.id"), nullable=False)
    quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


# --- sales -----------------------------------------------------------------


class SalesOrder(Base):
    __tablename__ = "sales_order"
    __table_args__ = (
        CheckConstraint("order_type IN ('invoice', 'draft', 'quotation')", name="ck_order_type"),
        CheckConstraint(
            "payment_status IN ('unpaid', 'partial', 'paid')", name="ck_order_payment_status"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    order_type: Mapped[str] = mapped_column(String(16), nullable=False, default="invoice")
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("contact.id"))
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("branch.id"), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="unpaid")
    production_status: Mapped[str] = mapped_column(String(32), nullable=False, default="na")
    total_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    valid_until: Mapped[Date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    produced_by: Mapped[str | None] = mapped_column(Text)
    produced_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    dispatcher_name: Mapped[str | None] = mapped_column(Text)
    vehicle_plate: Mapped[str | None] = mapped_column(String(32))
    delivery_signature: Mapped[str | None] = mapped_column(Text)
    delivered_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class SalesItem(Base):
    __tablename__ = "sales_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    sales_order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("sales_order.id"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("product.id"), nullable=False)
    quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    unit_price: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    subtotal: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    returned_quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False, default=0)


class ItemAssignment(Base):
    __tablename__ = "item_assignment"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    sales_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("sales_item.id"), nullable=False, index=True
    )
    inventory_batch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("inventory_batch.id"), nullable=False, index=True
    )
    quantity_deducted: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


# --- purchases -------------------------------------------------------------


class Purchase(Base):
    __tablename__ = "purchase"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    purchase_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    supplier_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("contact.id"), nullable=False)
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("branch.id"), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="unpaid")
    total_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class PurchaseItem(Base):
    __tablename__ = "purchase_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    purchase_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("purchase.id"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("product.id"), nullable=False)
    quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    unit_cost: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    subtotal: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    inventory_batch_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("inventory_batch.id")
    )
    returned_quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False, default=0)


# --- returns ---------------------------------------------------------------


class SalesReturn(Base):
    __tablename__ = "sales_return"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    return_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    sales_order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("sales_order.id"), nullable=False, index=True
    )
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("contact.id"))
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("branch.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    reason: Mapped[str | None] = mapped_column(Text)
    total_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    approved_by: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class SalesReturnItem(Base):
    __tablename__ = "sales_return_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    sales_return_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("sales_return.id"), nullable=False, index=True
    )
    sales_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("sales_item.id"), nullable=False
    )
    quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    unit_price: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    subtotal: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)


class PurchaseReturn(Base):
    __tablename__ = "purchase_return"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    return_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    purchase_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("purchase.id"), nullable=False, index=True
    )
    supplier_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("contact.id"), nullable=False)
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("branch.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    reason: Mapped[str | None] = mapped_column(Text)
    total_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    approved_by: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class PurchaseReturnItem(Base):
    __tablename__ = "purchase_return_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    purchase_return_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("purchase_return.id"), nullable=False, index=True
    )
    purchase_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("purchase_item.id"), nullable=False
    )
    quantity: Mapped[Numeric] = mapped_column(QTY_TYPE, nullable=False)
    unit_cost: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    subtotal: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)


# --- ledger and payments ---------------------------------------------------


class LedgerEntry(Base):
    __tablename__ = "ledger_entry"
    __table_args__ = (
        CheckConstraint("debit_amount >= 0 AND credit_amount >= 0", name="ck_ledger_nonnegative"),
        Index("ix_ledger_stream", "contact_id", "branch_id", "transaction_date", "id"),
        Index("ix_ledger_reference", "reference_type", "reference_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("contact.id"), nullable=False)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("branch.id"))
    transaction_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(32))
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    description: Mapped[str | None] = mapped_column(Text)
    debit_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    credit_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    running_balance: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Payment(Base):
    __tablename__ = "payment"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive"),
        CheckConstraint("kind IN ('payment', 'advance')", name="ck_payment_kind"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("contact.id"), nullable=False)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("branch.id"))
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="payment")
    amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default="cash")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_confirmation")
    reference: Mapped[str | None] = mapped_column(Text)
    payment_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_by: Mapped[str | None] = mapped_column(Text)
    confirmed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class NamedLock(Base):
    __tablename__ = "named_lock"

    name: Mapped[str] = mapped_column(String(200), primary_key=True)
    acquired_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
