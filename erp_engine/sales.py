"""
Sales orders: create, convert, cancel and drive through production.

Only ``invoice`` orders move stock and post to the ledger. Drafts and
quotations keep validated lines and become invoices through
``convert_to_invoice``.

Ledger failures are deliberately asymmetric. While an invoice is being
created the INVOICE entry is part of the transaction and any failure aborts
the sale. When a manufactured order is approved out of ``pending_approval``
the entry is written inside a savepoint; a failure there is logged, the
approval still commits, and ``ledger.backfill_invoices`` posts the entry
later.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from erp_engine import allocation, ledger, production, sequences
from erp_engine.config import settings
from erp_engine.db import get_or_raise, unit_of_work
from erp_engine.errors import (
    BusinessRuleViolation,
    EngineError,
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from erp_engine.logging_config import get_logger
from erp_engine.models import (
    Branch,
    Contact,
    ItemAssignment,
    Product,
    SalesItem,
    SalesOrder,
    SalesReturn,
    SalesReturnItem,
    product_branch,
)
from erp_engine.numeric import ZERO, money, qty
from erp_engine.schemas import (
    Actor,
    AllocationPreview,
    DeliveryCreate,
    MaterialAssign,
    ProductionStatusUpdate,
    SaleConvert,
    SaleCreate,
)

logger = get_logger(__name__)

PRICE_OVERRIDE = "sale_price_override"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def lock_order(db: Session, order_id: int) -> SalesOrder:
    order = (
        db.query(SalesOrder)
        .filter(SalesOrder.id == order_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if order is None:
        raise NotFound("sales order", order_id)
    return order


def order_items(db: Session, order_id: int) -> list[SalesItem]:
    return db.query(SalesItem).filter(SalesItem.sales_order_id == order_id).order_by(SalesItem.id).all()


def _sellable_product(db: Session, product_id: int, branch_id: int) -> Product:
    product = get_or_raise(db, Product, product_id, "product")
    if not product.is_active:
        raise ValidationFailed(f"product {product.sku} is inactive")
    branches = db.execute(
        select(product_branch.c.branch_id).where(product_branch.c.product_id == product.id)
    ).scalars().all()
    if branches and branch_id not in branches:
        raise ValidationFailed(f"product {product.sku} is not available in branch {branch_id}")
    return product


def _check_price(product: Product, unit_price: Decimal, actor: Actor) -> None:
    list_price = money(product.selling_price)
    if list_price > ZERO and money(unit_price) != list_price and not actor.can(PRICE_OVERRIDE):
        raise PermissionDenied(
            f"price {money(unit_price)} for {product.sku} differs from list price {list_price}",
            details={"product_id": product.id, "permission": PRICE_OVERRIDE},
        )


def _get_customer(db: Session, customer_id: Optional[int]) -> Optional[Contact]:
    if customer_id is None:
        return None
    customer = get_or_raise(db, Contact, customer_id, "customer")
    if customer.contact_type != "customer":
        raise ValidationFailed(f"contact {customer_id} is not a customer")
    return customer


def _allocate(db: Session, sales_item: SalesItem, plan: allocation.LinePlan) -> None:
    for deduction in allocation.execute_plan(db, plan):
        db.add(
            ItemAssignment(
                sales_item_id=sales_item.id,
                inventory_batch_id=deduction.batch_id,
                quantity_deducted=deduction.quantity,
                created_at=_now(),
            )
        )


def _start_invoice(db: Session, order: SalesOrder, has_manufactured: bool, actor: Actor) -> None:
    """Production status and ledger entry for an order that just became an invoice."""
    if has_manufactured and settings.require_manufacturing_approval:
        production.transition(order, production.PENDING_APPROVAL)
        logger.info("order %s awaits manufacturing approval, invoice entry deferred", order.invoice_number)
        return
    if has_manufactured:
        production.transition(order, production.QUEUE)
    db.flush()
    ledger.post_invoice(db, order, created_by=actor.user_id)


def create_sale(db: Session, payload: SaleCreate, actor: Actor) -> SalesOrder:
    with unit_of_work(db):
        _get_customer(db, payload.customer_id)
        get_or_raise(db, Branch, payload.branch_id, "branch")
        if payload.order_type == "quotation" and payload.valid_until and payload.valid_until < date.today():
            raise ValidationFailed("quotation valid_until is in the past")

        invoice_number = sequences.next_number(db, "INV")
        lines = []
        for item in payload.items:
            product = _sellable_product(db, item.product_id, payload.branch_id)
            _check_price(product, item.unit_price, actor)
            plan = allocation.plan_line(db, product, payload.branch_id, item.quantity, item.item_assignments)
            lines.append((item, plan))

        total = money(sum((qty(item.quantity) * money(item.unit_price) for item, _ in lines), ZERO))
        order = SalesOrder(
            invoice_number=invoice_number,
            order_type=payload.order_type,
            customer_id=payload.customer_id,
            branch_id=payload.branch_id,
            payment_status=payload.payment_status,
            production_status=production.NA,
            total_amount=total,
            valid_until=payload.valid_until if payload.order_type == "quotation" else None,
            notes=payload.notes,
            created_by=actor.user_id,
            created_at=_now(),
        )
        db.add(order)
        db.flush()

        is_invoice = payload.order_type == "invoice"
        for item, plan in lines:
            sales_item = SalesItem(
                sales_order_id=order.id,
                product_id=item.product_id,
                quantity=qty(item.quantity),
                unit_price=money(item.unit_price),
                subtotal=money(qty(item.quantity) * money(item.unit_price)),
                returned_quantity=ZERO,
            )
            db.add(sales_item)
            db.flush()
            if is_invoice:
                _allocate(db, sales_item, plan)

        if is_invoice:
            has_manufactured = any(isinstance(plan, allocation.ManufacturedLine) for _, plan in lines)
            _start_invoice(db, order, has_manufactured, actor)
        logger.info(
            "%s %s created for customer %s, total %s", payload.order_type, invoice_number, payload.customer_id, total
        )
    return order


def convert_to_invoice(db: Session, order_id: int, payload: SaleConvert, actor: Actor) -> SalesOrder:
    with unit_of_work(db):
        order = lock_order(db, order_id)
        if order.order_type == "invoice":
            raise ValidationFailed(f"order {order.invoice_number} is already an invoice")
        if order.order_type == "quotation" and order.valid_until is not None and order.valid_until < date.today():
            raise BusinessRuleViolation(f"quotation {order.invoice_number} expired on {order.valid_until}")

        items = order_items(db, order.id)
        plans = []
        for item in items:
            product = _sellable_product(db, item.product_id, order.branch_id)
            plans.append(
                allocation.plan_line(db, product, order.branch_id, item.quantity, payload.assignments.get(item.id))
            )
        order.order_type = "invoice"
        order.valid_until = None
        for item, plan in zip(items, plans):
            _allocate(db, item, plan)
        has_manufactured = any(isinstance(plan, allocation.ManufacturedLine) for plan in plans)
        _start_invoice(db, order, has_manufactured, actor)
        logger.info("order %s converted to invoice by %s", order.invoice_number, actor.user_id)
    return order


def cancel_sale(db: Session, order_id: int, actor: Actor) -> dict:
    """Void an order and undo every effect it had."""
    with unit_of_work(db):
        order = lock_order(db, order_id)
        if order.production_status in production.LOCKED_STATES:
            raise InvalidStateTransition(
                f"order {order.invoice_number} is {order.production_status} and cannot be cancelled"
            )
        open_returns = (
            db.query(SalesReturn.id)
            .filter(SalesReturn.sales_order_id == order.id, SalesReturn.status != "cancelled")
            .count()
        )
        if open_returns:
            raise BusinessRuleViolation(f"order {order.invoice_number} has returns and cannot be cancelled")

        items = order_items(db, order.id)
        item_ids = [item.id for item in items]
        assignments = (
            db.query(ItemAssignment)
            .filter(ItemAssignment.sales_item_id.in_(item_ids))
            .order_by(ItemAssignment.id)
            .all()
            if item_ids
            else []
        )
        restored = []
        for assignment in assignments:
            batch = allocation.lock_batch(db, assignment.inventory_batch_id)
            allocation.restore(batch, qty(assignment.quantity_deducted))
            restored.append(batch.id)
            db.delete(assignment)
        db.flush()

        reversed_entries = ledger.reverse_entries(db, "sales_order", order.id)

        cancelled_returns = db.query(SalesReturn).filter(SalesReturn.sales_order_id == order.id).all()
        if cancelled_returns:
            db.query(SalesReturnItem).filter(
                SalesReturnItem.sales_return_id.in_([ret.id for ret in cancelled_returns])
            ).delete(synchronize_session=False)
            for ret in cancelled_returns:
                db.delete(ret)
            db.flush()

        for item in items:
            db.delete(item)
        db.flush()
        invoice_number = order.invoice_number
        db.delete(order)
        logger.info(
            "order %s cancelled by %s: %d assignment(s) restored, %d ledger entr(ies) reversed",
            invoice_number,
            actor.user_id,
            len(assignments),
            reversed_entries,
        )
    return {"invoice_number": invoice_number, "restored_batch_ids": restored, "ledger_entries_reversed": reversed_entries}


def _post_approved_invoice(db: Session, order: SalesOrder, actor: Actor) -> bool:
    try:
        with db.begin_nested():
            ledger.post_invoice(db, order, created_by=actor.user_id)
    except (EngineError, SQLAlchemyError):
        logger.exception(
            "invoice ledger entry for approved order %s failed, approval kept for backfill", order.invoice_number
        )
        return False
    return True


def _apply_transition(db: Session, order: SalesOrder, target: str, actor: Actor, **fields) -> bool:
    if order.order_type != "invoice":
        raise ValidationFailed(f"order {order.invoice_number} is a {order.order_type}, not an invoice")
    previous = order.production_status
    changed = production.transition(order, target, **fields)
    if changed and previous == production.PENDING_APPROVAL and target == production.QUEUE:
        order.approved_by = actor.user_id
        db.flush()
        _post_approved_invoice(db, order, actor)
    return changed


def update_production_status(
    db: Session, order_id: int, payload: ProductionStatusUpdate, actor: Actor
) -> SalesOrder:
    with unit_of_work(db):
        order = lock_order(db, order_id)
        _apply_transition(
            db,
            order,
            payload.status,
            actor,
            worker=payload.worker_name,
            dispatcher=payload.dispatcher_name,
            vehicle_plate=payload.vehicle_plate,
            signature=payload.delivery_signature,
            reason=payload.reason,
        )
    return order


def mark_delivered(db: Session, order_id: int, payload: DeliveryCreate, actor: Actor) -> SalesOrder:
    with unit_of_work(db):
        order = lock_order(db, order_id)
        _apply_transition(
            db,
            order,
            production.DELIVERED,
            actor,
            dispatcher=payload.dispatcher_name,
            vehicle_plate=payload.vehicle_plate,
            signature=payload.delivery_signature,
        )
    return order


def _require_status(order: SalesOrder, *allowed: str) -> None:
    if order.production_status not in allowed:
        raise InvalidStateTransition(
            f"order {order.invoice_number} is {order.production_status}, expected one of {', '.join(allowed)}"
        )


def approve_manufacturing(db: Session, order_id: int, actor: Actor) -> SalesOrder:
    with unit_of_work(db):
        order = lock_order(db, order_id)
        _require_status(order, production.PENDING_APPROVAL, production.QUEUE)
        _apply_transition(db, order, production.QUEUE, actor)
    return order


def reject_manufacturing(db: Session, order_id: int, reason: str, actor: Actor) -> SalesOrder:
    with unit_of_work(db):
        order = lock_order(db, order_id)
        _require_status(order, production.PENDING_APPROVAL, production.REJECTED)
        _apply_transition(db, order, production.REJECTED, actor, reason=reason)
    return order


def resubmit_manufacturing(db: Session, order_id: int, actor: Actor) -> SalesOrder:
    with unit_of_work(db):
        order = lock_order(db, order_id)
        _require_status(order, production.REJECTED, production.PENDING_APPROVAL)
        _apply_transition(db, order, production.PENDING_APPROVAL, actor)
    return order


def assign_material(db: Session, sales_item_id: int, payload: MaterialAssign, actor: Actor) -> SalesItem:
    """Swap the raw material behind a manufactured line before it is produced.

    The line's current assignments go back to their batches and the new picks,
    which must add up to the recipe requirement, are deducted in their place.
    """
    with unit_of_work(db):
        item = get_or_raise(db, SalesItem, sales_item_id, "sales item")
        order = lock_order(db, item.sales_order_id)
        db.refresh(item)
        if order.order_type != "invoice":
            raise ValidationFailed(f"order {order.invoice_number} is a {order.order_type}, not an invoice")
        product = get_or_raise(db, Product, item.product_id, "product")
        if product.product_type != allocation.MANUFACTURED:
            raise ValidationFailed(f"product {product.sku} is not manufactured, material is allocated at sale")
        _require_status(order, production.PENDING_APPROVAL, production.QUEUE)
        if qty(item.returned_quantity) > ZERO:
            raise BusinessRuleViolation(f"line {item.id} has returns, its material can no longer be reassigned")
        plan = allocation.plan_line(db, product, order.branch_id, item.quantity, payload.item_assignments)

        current = (
            db.query(ItemAssignment)
            .filter(ItemAssignment.sales_item_id == item.id)
            .order_by(ItemAssignment.id)
            .all()
        )
        for assignment in current:
            batch = allocation.lock_batch(db, assignment.inventory_batch_id)
            allocation.restore(batch, qty(assignment.quantity_deducted))
            db.delete(assignment)
        db.flush()

        _allocate(db, item, plan)
        logger.info(
            "material of line %s on order %s reassigned by %s: %d assignment(s) replaced by %d pick(s)",
            item.id,
            order.invoice_number,
            actor.user_id,
            len(current),
            len(plan.picks),
        )
    return item


def propose_allocation(db: Session, payload: AllocationPreview) -> allocation.Proposal:
    product = _sellable_product(db, payload.product_id, payload.branch_id)
    return allocation.propose_for_product(db, product, payload.branch_id, payload.quantity)
