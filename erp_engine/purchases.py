from datetime import datetime, timezone

from sqlalchemy.orm import Session

from erp_engine import ledger, sequences, stock
from erp_engine.allocation import MANUFACTURED, RAW_TRACKED, lock_batch
from erp_engine.db import get_or_raise, unit_of_work
from erp_engine.errors import BusinessRuleViolation, NotFound, ValidationFailed
from erp_engine.logging_config import get_logger
from erp_engine.models import (
    Branch,
    Contact,
    ItemAssignment,
    Product,
    Purchase,
    PurchaseItem,
    PurchaseReturn,
    PurchaseReturnItem,
    StockAdjustment,
    StockTransfer,
)
from erp_engine.numeric import ZERO, money, qty
from erp_engine.schemas import Actor, PurchaseCreate

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def lock_purchase(db: Session, purchase_id: int) -> Purchase:
    purchase = (
        db.query(Purchase)
        .filter(Purchase.id == purchase_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if purchase is None:
        raise NotFound("purchase", purchase_id)
    return purchase


def purchase_items(db: Session, purchase_id: int) -> list[PurchaseItem]:
    return db.query(PurchaseItem).filter(PurchaseItem.purchase_id == purchase_id).order_by(PurchaseItem.id).all()


def create_purchase(db: Session, payload: PurchaseCreate, actor: Actor) -> Purchase:
    """Record a supplier purchase, register its batches and credit the supplier."""
    with unit_of_work(db):
        supplier = get_or_raise(db, Contact, payload.supplier_id, "supplier")
        if supplier.contact_type != "supplier":
            raise ValidationFailed(f"contact {supplier.id} is not a supplier")
        get_or_raise(db, Branch, payload.branch_id, "branch")

        products = []
        for item in payload.items:
            product = get_or_raise(db, Product, item.product_id, "product")
            if product.product_type == MANUFACTURED:
                raise ValidationFailed(f"manufactured product {product.sku} cannot be purchased")
            if product.product_type == RAW_TRACKED and not item.instance_code and item.batch_type_id is None:
                raise ValidationFailed(f"tracked product {product.sku} needs an instance_code or batch_type_id")
            products.append(product)

        purchase_number = sequences.next_number(db, "PO")
        total = money(sum((qty(item.quantity) * money(item.unit_cost) for item in payload.items), ZERO))
        purchase = Purchase(
            purchase_number=purchase_number,
            supplier_id=supplier.id,
            branch_id=payload.branch_id,
            payment_status=payload.payment_status,
            total_amount=total,
            notes=payload.notes,
            created_by=actor.user_id,
            created_at=_now(),
        )
        db.add(purchase)
        db.flush()

        for item, product in zip(payload.items, products):
            purchase_item = PurchaseItem(
                purchase_id=purchase.id,
                product_id=product.id,
                quantity=qty(item.quantity),
                unit_cost=money(item.unit_cost),
                subtotal=money(qty(item.quantity) * money(item.unit_cost)),
                returned_quantity=ZERO,
            )
            db.add(purchase_item)
            db.flush()
            if product.product_type == RAW_TRACKED:
                batch = stock.create_batch(
                    db,
                    product,
                    payload.branch_id,
                    item.quantity,
                    batch_type_id=item.batch_type_id,
                    instance_code=item.instance_code,
                    purchase_item_id=purchase_item.id,
                )
                purchase_item.inventory_batch_id = batch.id

        if total > ZERO:
            ledger.append_entry(
                db,
                supplier.id,
                transaction_type=ledger.INVOICE,
                credit=total,
                branch_id=payload.branch_id,
                transaction_date=purchase.created_at,
                reference_type="purchase",
                reference_id=purchase.id,
                description=f"Purchase {purchase_number}",
                created_by=actor.user_id,
            )
        logger.info("purchase %s created from supplier %s, total %s", purchase_number, supplier.id, total)
    return purchase


def cancel_purchase(db: Session, purchase_id: int, actor: Actor) -> dict:
    """Delete a purchase whose batches have not been touched since receipt."""
    with unit_of_work(db):
        purchase = lock_purchase(db, purchase_id)
        returns = (
            db.query(PurchaseReturn.id)
            .filter(PurchaseReturn.purchase_id == purchase.id, PurchaseReturn.status != "cancelled")
            .count()
        )
        if returns:
            raise BusinessRuleViolation(f"purchase {purchase.purchase_number} has returns and cannot be cancelled")

        items = purchase_items(db, purchase.id)
        batches = []
        for item in items:
            if item.inventory_batch_id is None:
                continue
            batch = lock_batch(db, item.inventory_batch_id)
            used = (
                db.query(ItemAssignment.id).filter(ItemAssignment.inventory_batch_id == batch.id).first()
                or db.query(StockAdjustment.id).filter(StockAdjustment.batch_id == batch.id).first()
                or db.query(StockTransfer.id).filter(StockTransfer.batch_id == batch.id).first()
            )
            if used or batch.status != "in_stock" or qty(batch.remaining_quantity) != qty(batch.initial_quantity):
                raise BusinessRuleViolation(
                    f"batch {batch.instance_code} has been used and purchase {purchase.purchase_number} cannot be cancelled"
                )
            batches.append(batch)

        deleted_ids = [batch.id for batch in batches]
        reversed_entries = ledger.reverse_entries(db, "purchase", purchase.id)
        cancelled_returns = db.query(PurchaseReturn).filter(PurchaseReturn.purchase_id == purchase.id).all()
        if cancelled_returns:
            db.query(PurchaseReturnItem).filter(
                PurchaseReturnItem.purchase_return_id.in_([ret.id for ret in cancelled_returns])
            ).delete(synchronize_session=False)
            for ret in cancelled_returns:
                db.delete(ret)
            db.flush()
        for item in items:
            item.inventory_batch_id = None
        db.flush()
        for batch in batches:
            db.delete(batch)
        for item in items:
            db.delete(item)
        db.flush()
        purchase_number = purchase.purchase_number
        db.delete(purchase)
        logger.info("purchase %s cancelled by %s", purchase_number, actor.user_id)
    return {
        "purchase_number": purchase_number,
        "deleted_batch_ids": deleted_ids,
        "ledger_entries_reversed": reversed_entries,
    }
