"""
Sales and purchase returns.

A return is created ``pending`` and has no effect until it is approved.
Approval moves stock and writes the ledger entry in one transaction and
cannot be undone; a pending return can instead be cancelled.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from erp_engine import allocation, ledger, sequences
from erp_engine.db import get_or_raise, unit_of_work
from erp_engine.errors import BusinessRuleViolation, NotFound, ValidationFailed
from erp_engine.logging_config import get_logger
from erp_engine.models import (
    ItemAssignment,
    Purchase,
    PurchaseItem,
    PurchaseReturn,
    PurchaseReturnItem,
    SalesItem,
    SalesOrder,
    SalesReturn,
    SalesReturnItem,
)
from erp_engine.numeric import ZERO, money, qty
from erp_engine.schemas import Actor, PurchaseReturnCreate, SalesReturnCreate

logger = get_logger(__name__)

PENDING = "pending"
APPROVED = "approved"
CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _lock(db: Session, model, ident: int, label: str):
    row = db.query(model).filter(model.id == ident).with_for_update().populate_existing().one_or_none()
    if row is None:
        raise NotFound(label, ident)
    return row


def _require_pending(ret, label: str) -> None:
    if ret.status != PENDING:
        raise BusinessRuleViolation(f"{label} {ret.return_number} is {ret.status}, not pending")


def _pending_sales_quantity(db: Session, sales_item_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(SalesReturnItem.quantity), 0))
        .select_from(SalesReturnItem)
        .join(SalesReturn, SalesReturn.id == SalesReturnItem.sales_return_id)
        .filter(SalesReturnItem.sales_item_id == sales_item_id, SalesReturn.status == PENDING)
        .scalar()
    )
    return qty(total)


def _pending_purchase_quantity(db: Session, purchase_item_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(PurchaseReturnItem.quantity), 0))
        .select_from(PurchaseReturnItem)
        .join(PurchaseReturn, PurchaseReturn.id == PurchaseReturnItem.purchase_return_id)
        .filter(PurchaseReturnItem.purchase_item_id == purchase_item_id, PurchaseReturn.status == PENDING)
        .scalar()
    )
    return qty(total)


def _returnable(sold: Decimal, returned: Decimal, pending: Decimal) -> Decimal:
    return qty(sold) - qty(returned) - pending


# --- sales returns ---------------------------------------------------------


def create_sales_return(db: Session, payload: SalesReturnCreate, actor: Actor) -> SalesReturn:
    with unit_of_work(db):
        return_number = sequences.next_number(db, "RET")
        order = _lock(db, SalesOrder, payload.sales_order_id, "sales order")
        if order.order_type != "invoice":
            raise ValidationFailed(f"order {order.invoice_number} is a {order.order_type}, only invoices take returns")

        lines = []
        for requested in payload.items:
            item = db.get(SalesItem, requested.item_id)
            if item is None or item.sales_order_id != order.id:
                raise ValidationFailed(f"item {requested.item_id} is not part of order {order.invoice_number}")
            pending = _pending_sales_quantity(db, item.id)
            available = _returnable(item.quantity, item.returned_quantity, pending)
            quantity = qty(requested.quantity)
            if quantity > available:
                raise ValidationFailed(
                    f"cannot return {quantity} of item {item.id}: only {available} returnable",
                    details={"item_id": item.id, "returnable": str(available)},
                )
            lines.append((item, quantity))

        ret = SalesReturn(
            return_number=return_number,
            sales_order_id=order.id,
            customer_id=order.customer_id,
            branch_id=order.branch_id,
            status=PENDING,
            reason=payload.reason,
            total_amount=money(sum((quantity * money(item.unit_price) for item, quantity in lines), ZERO)),
            created_by=actor.user_id,
            created_at=_now(),
        )
        db.add(ret)
        db.flush()
        for item, quantity in lines:
            db.add(
                SalesReturnItem(
                    sales_return_id=ret.id,
                    sales_item_id=item.id,
                    quantity=quantity,
                    unit_price=money(item.unit_price),
                    subtotal=money(quantity * money(item.unit_price)),
                )
            )
        logger.info("sales return %s created for order %s", return_number, order.invoice_number)
    return ret


def _restore_line(db: Session, item: SalesItem, ratio: Decimal) -> None:
    """Give back ``ratio`` of what is still deducted on every batch pick of ``item``."""
    assignments = (
        db.query(ItemAssignment)
        .filter(ItemAssignment.sales_item_id == item.id)
        .order_by(ItemAssignment.id)
        .all()
    )
    for assignment in assignments:
        deducted = qty(assignment.quantity_deducted)
        amount = min(qty(deducted * ratio), deducted)
        if amount == ZERO:
            continue
        batch = allocation.lock_batch(db, assignment.inventory_batch_id)
        allocation.restore(batch, amount)
        if amount == deducted:
            db.delete(assignment)
        else:
            assignment.quantity_deducted = deducted - amount


def approve_sales_return(db: Session, return_id: int, actor: Actor) -> SalesReturn:
    with unit_of_work(db):
        ret = _lock(db, SalesReturn, return_id, "sales return")
        _require_pending(ret, "sales return")
        return_items = (
            db.query(SalesReturnItem)
            .filter(SalesReturnItem.sales_return_id == ret.id)
            .order_by(SalesReturnItem.id)
            .all()
        )
        for line in return_items:
            item = get_or_raise(db, SalesItem, line.sales_item_id, "sales item")
            quantity = qty(line.quantity)
            if quantity > _returnable(item.quantity, item.returned_quantity, ZERO):
                raise ValidationFailed(f"item {item.id} has already been returned")
            # picks already shrank with earlier returns, so the share is of what is still out
            _restore_line(db, item, quantity / (qty(item.quantity) - qty(item.returned_quantity)))
            item.returned_quantity = qty(item.returned_quantity) + quantity

        ret.status = APPROVED
        ret.approved_by = actor.user_id
        ret.approved_at = _now()
        if ret.customer_id is not None and money(ret.total_amount) > ZERO:
            ledger.append_entry(
                db,
                ret.customer_id,
                transaction_type=ledger.RETURN,
                credit=ret.total_amount,
                branch_id=ret.branch_id,
                reference_type="sales_return",
                reference_id=ret.id,
                description=f"Sales return {ret.return_number}",
                created_by=actor.user_id,
            )
        logger.info("sales return %s approved by %s", ret.return_number, actor.user_id)
    return ret


def cancel_sales_return(db: Session, return_id: int, actor: Actor) -> SalesReturn:
    with unit_of_work(db):
        ret = _lock(db, SalesReturn, return_id, "sales return")
        _require_pending(ret, "sales return")
        ret.status = CANCELLED
        logger.info("sales return %s cancelled by %s", ret.return_number, actor.user_id)
    return ret


# --- purchase returns ------------------------------------------------------


def create_purchase_return(db: Session, payload: PurchaseReturnCreate, actor: Actor) -> PurchaseReturn:
    with unit_of_work(db):
        return_number = sequences.next_number(db, "PRET")
        purchase = _lock(db, Purchase, payload.purchase_id, "purchase")
        lines = []
        for requested in payload.items:
            item = db.get(PurchaseItem, requested.item_id)
            if item is None or item.purchase_id != purchase.id:
                raise ValidationFailed(f"item {requested.item_id} is not part of purchase {purchase.purchase_number}")
            pending = _pending_purchase_quantity(db, item.id)
            available = _returnable(item.quantity, item.returned_quantity, pending)
            quantity = qty(requested.quantity)
            if quantity > available:
                raise ValidationFailed(
                    f"cannot return {quantity} of item {item.id}: only {available} returnable",
                    details={"item_id": item.id, "returnable": str(available)},
                )
            lines.append((item, quantity))

        ret = PurchaseReturn(
            return_number=return_number,
            purchase_id=purchase.id,
            supplier_id=purchase.supplier_id,
            branch_id=purchase.branch_id,
            status=PENDING,
            reason=payload.reason,
            total_amount=money(sum((quantity * money(item.unit_cost) for item, quantity in lines), ZERO)),
            created_by=actor.user_id,
            created_at=_now(),
        )
        db.add(ret)
        db.flush()
        for item, quantity in lines:
            db.add(
                PurchaseReturnItem(
                    purchase_return_id=ret.id,
                    purchase_item_id=item.id,
                    quantity=quantity,
                    unit_cost=money(item.unit_cost),
                    subtotal=money(quantity * money(item.unit_cost)),
                )
            )
        logger.info("purchase return %s created for %s", return_number, purchase.purchase_number)
    return ret


def approve_purchase_return(db: Session, return_id: int, actor: Actor) -> PurchaseReturn:
    with unit_of_work(db):
        ret = _lock(db, PurchaseReturn, return_id, "purchase return")
        _require_pending(ret, "purchase return")
        return_items = (
            db.query(PurchaseReturnItem)
            .filter(PurchaseReturnItem.purchase_return_id == ret.id)
            .order_by(PurchaseReturnItem.id)
            .all()
        )
        for line in return_items:
            item = get_or_raise(db, PurchaseItem, line.purchase_item_id, "purchase item")
            quantity = qty(line.quantity)
            if quantity > _returnable(item.quantity, item.returned_quantity, ZERO):
                raise ValidationFailed(f"purchase item {item.id} has already been returned")
            if item.inventory_batch_id is not None:
                batch = allocation.lock_batch(db, item.inventory_batch_id)
                if batch.status == "scrapped":
                    raise BusinessRuleViolation(f"batch {batch.instance_code} is scrapped")
                allocation.deduct(batch, quantity)
            item.returned_quantity = qty(item.returned_quantity) + quantity

        ret.status = APPROVED
        ret.approved_by = actor.user_id
        ret.approved_at = _now()
        if money(ret.total_amount) > ZERO:
            ledger.append_entry(
                db,
                ret.supplier_id,
                transaction_type=ledger.RETURN,
                debit=ret.total_amount,
                branch_id=ret.branch_id,
                reference_type="purchase_return",
                reference_id=ret.id,
                description=f"Purchase return {ret.return_number}",
                created_by=actor.user_id,
            )
        logger.info("purchase return %s approved by %s", ret.return_number, actor.user_id)
    return ret


def cancel_purchase_return(db: Session, return_id: int, actor: Actor) -> PurchaseReturn:
    with unit_of_work(db):
        ret = _lock(db, PurchaseReturn, return_id, "purchase return")
        _require_pending(ret, "purchase return")
        ret.status = CANCELLED
        logger.info("purchase return %s cancelled by %s", ret.return_number, actor.user_id)
    return ret
