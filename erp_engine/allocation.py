"""
Inventory allocation: which batches satisfy a sold quantity.

A sale line is first turned into a plan, a small frozen value whose type says
how the line consumes stock:

* ``StandardLine``: product without batch tracking, no stock effect.
* ``FifoLine``: tracked raw product, oldest batches first.
* ``ManualLine``: tracked raw product, batches picked by the caller.
* ``ManufacturedLine``: recipe product; consumes ``quantity * conversion_factor``
  of the raw product, from explicit picks or FIFO.

``execute_plan`` dispatches on the plan type. Batches are always locked and
re-read before their quantity is trusted.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Union

from sqlalchemy.orm import Session

from erp_engine.errors import (
    AssignmentQuantityMismatch,
    InsufficientStock,
    NotFound,
    ProductMismatch,
    ValidationFailed,
)
from erp_engine.logging_config import get_logger
from erp_engine.models import InventoryBatch, Product, Recipe
from erp_engine.numeric import ZERO, qty

logger = get_logger(__name__)

STANDARD = "standard"
RAW_TRACKED = "raw_tracked"
MANUFACTURED = "manufactured_virtual"


@dataclass(frozen=True)
class Pick:
    batch_id: int
    quantity: Decimal


@dataclass(frozen=True)
class StandardLine:
    product_id: int
    quantity: Decimal


@dataclass(frozen=True)
class FifoLine:
    product_id: int
    branch_id: int
    quantity: Decimal


@dataclass(frozen=True)
class ManualLine:
    product_id: int
    branch_id: int
    quantity: Decimal
    picks: tuple[Pick, ...]


@dataclass(frozen=True)
class ManufacturedLine:
    product_id: int
    raw_product_id: int
    branch_id: int
    quantity: Decimal
    conversion_factor: Decimal
    required_raw_quantity: Decimal
    picks: tuple[Pick, ...] = ()


LinePlan = Union[StandardLine, FifoLine, ManualLine, ManufacturedLine]


@dataclass(frozen=True)
class Deduction:
    batch_id: int
    instance_code: str
    quantity: Decimal


@dataclass(frozen=True)
class Suggestion:
    batch_id: int
    instance_code: str
    available: Decimal
    quantity: Decimal


@dataclass(frozen=True)
class Proposal:
    product_id: int
    branch_id: int
    required_quantity: Decimal
    suggestions: list[Suggestion] = field(default_factory=list)
    shortfall: Decimal = ZERO

    @property
    def satisfiable(self) -> bool:
        return self.shortfall == ZERO


# --- batch mutation --------------------------------------------------------


def deduct(batch: InventoryBatch, amount: Decimal) -> None:
    remaining = qty(batch.remaining_quantity) - amount
    if remaining < ZERO:
        raise InsufficientStock(
            f"insufficient stock in {batch.instance_code}: available "
            f"{qty(batch.remaining_quantity)}, required {amount}",
            details={"batch_id": batch.id, "instance_code": batch.instance_code},
        )
    batch.remaining_quantity = remaining
    if remaining == ZERO:
        batch.status = "depleted"


def restore(batch: InventoryBatch, amount: Decimal) -> None:
    """Put ``amount`` back on ``batch``. A scrapped batch stays scrapped."""
    remaining = qty(batch.remaining_quantity) + amount
    batch.remaining_quantity = remaining
    if batch.status == "depleted" and remaining > ZERO:
        batch.status = "in_stock"


def lock_batch(db: Session, batch_id: int) -> InventoryBatch:
    batch = (
        db.query(InventoryBatch)
        .filter(InventoryBatch.id == batch_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if batch is None:
        raise NotFound("inventory batch", batch_id)
    return batch


def _in_stock_query(db: Session, product_id: int, branch_id: int):
    return (
        db.query(InventoryBatch)
        .filter(
            InventoryBatch.product_id == product_id,
            InventoryBatch.branch_id == branch_id,
            InventoryBatch.status == "in_stock",
            InventoryBatch.remaining_quantity > 0,
        )
        .order_by(InventoryBatch.created_at, InventoryBatch.id)
    )


# --- policies --------------------------------------------------------------


def allocate_fifo(db: Session, product_id: int, branch_id: int, quantity: Decimal) -> list[Deduction]:
    quantity = qty(quantity)
    batches = _in_stock_query(db, product_id, branch_id).with_for_update().populate_existing().all()
    available = sum((qty(batch.remaining_quantity) for batch in batches), ZERO)
    if available < quantity:
        raise InsufficientStock(
            f"insufficient stock for product {product_id} in branch {branch_id}: "
            f"available {available}, required {quantity}",
            details={"product_id": product_id, "branch_id": branch_id, "shortfall": str(quantity - available)},
        )
    deductions: list[Deduction] = []
    outstanding = quantity
    for batch in batches:
        if outstanding == ZERO:
            break
        take = min(qty(batch.remaining_quantity), outstanding)
        deduct(batch, take)
        deductions.append(Deduction(batch.id, batch.instance_code, take))
        outstanding -= take
    logger.info(
        "fifo allocated %s of product %s in branch %s from %d batch(es)",
        quantity,
        product_id,
        branch_id,
        len(deductions),
    )
    return deductions


def allocate_manual(
    db: Session, product_id: int, branch_id: int, picks: Sequence[Pick]
) -> list[Deduction]:
    """Deduct explicit picks. Every pick is validated before any batch changes."""
    locked: dict[int, InventoryBatch] = {}
    requested: dict[int, Decimal] = {}
    for pick in picks:
        batch = locked.get(pick.batch_id) or lock_batch(db, pick.batch_id)
        locked[batch.id] = batch
        if batch.product_id != product_id:
            raise ProductMismatch(
                f"batch {batch.instance_code} holds product {batch.product_id}, expected {product_id}",
                details={"batch_id": batch.id, "expected_product_id": product_id},
            )
        if batch.branch_id != branch_id:
            raise ValidationFailed(
                f"batch {batch.instance_code} belongs to branch {batch.branch_id}, not {branch_id}"
            )
        requested[batch.id] = requested.get(batch.id, ZERO) + qty(pick.quantity)
    for batch_id, amount in requested.items():
        batch = locked[batch_id]
        if batch.status != "in_stock" or qty(batch.remaining_quantity) < amount:
            raise InsufficientStock(
                f"insufficient stock in {batch.instance_code}: available "
                f"{qty(batch.remaining_quantity)} ({batch.status}), required {amount}",
                details={"batch_id": batch.id, "instance_code": batch.instance_code},
            )
    deductions = []
    for pick in picks:
        batch = locked[pick.batch_id]
        amount = qty(pick.quantity)
        deduct(batch, amount)
        deductions.append(Deduction(batch.id, batch.instance_code, amount))
    logger.info("manually allocated %d pick(s) of product %s", len(deductions), product_id)
    return deductions


def propose(db: Session, product_id: int, branch_id: int, quantity: Decimal) -> Proposal:
    """FIFO preview. Takes no locks and changes nothing."""
    quantity = qty(quantity)
    suggestions = []
    outstanding = quantity
    for batch in _in_stock_query(db, product_id, branch_id).all():
        if outstanding == ZERO:
            break
        available = qty(batch.remaining_quantity)
        take = min(available, outstanding)
        suggestions.append(Suggestion(batch.id, batch.instance_code, available, take))
        outstanding -= take
    return Proposal(product_id, branch_id, quantity, suggestions, outstanding)


# --- planning --------------------------------------------------------------


def get_recipe(db: Session, product_id: int) -> Recipe:
    recipe = db.query(Recipe).filter(Recipe.virtual_product_id == product_id).one_or_none()
    if recipe is None:
        raise ValidationFailed(f"manufactured product {product_id} has no recipe")
    return recipe


def required_raw_quantity(quantity: Decimal, recipe: Recipe) -> Decimal:
    return qty(qty(quantity) * Decimal(recipe.conversion_factor))


def _picks(assignments: Optional[Iterable]) -> tuple[Pick, ...]:
    if not assignments:
        return ()
    return tuple(Pick(a.batch_id, qty(a.quantity)) for a in assignments)


def _check_pick_total(picks: tuple[Pick, ...], required: Decimal, label: str) -> None:
    total = sum((pick.quantity for pick in picks), ZERO)
    if total != required:
        raise AssignmentQuantityMismatch(
            f"assigned quantity {total} for {label} does not equal required {required}",
            details={"assigned": str(total), "required": str(required)},
        )


def plan_line(
    db: Session,
    product: Product,
    branch_id: int,
    quantity: Decimal,
    assignments: Optional[Iterable] = None,
) -> LinePlan:
    quantity = qty(quantity)
    picks = _picks(assignments)
    if product.product_type == MANUFACTURED:
        recipe = get_recipe(db, product.id)
        required = required_raw_quantity(quantity, recipe)
        if picks:
            _check_pick_total(picks, required, f"product {product.sku}")
        return ManufacturedLine(
            product_id=product.id,
            raw_product_id=recipe.raw_product_id,
            branch_id=branch_id,
            quantity=quantity,
            conversion_factor=Decimal(recipe.conversion_factor),
            required_raw_quantity=required,
            picks=picks,
        )
    if product.product_type == RAW_TRACKED:
        if picks:
            _check_pick_total(picks, quantity, f"product {product.sku}")
            return ManualLine(product.id, branch_id, quantity, picks)
        return FifoLine(product.id, branch_id, quantity)
    if picks:
        raise ValidationFailed(f"product {product.sku} is not batch tracked and takes no batch assignments")
    return StandardLine(product.id, quantity)


def _execute_standard(db: Session, plan: StandardLine) -> list[Deduction]:
    return []


def _execute_fifo(db: Session, plan: FifoLine) -> list[Deduction]:
    return allocate_fifo(db, plan.product_id, plan.branch_id, plan.quantity)


def _execute_manual(db: Session, plan: ManualLine) -> list[Deduction]:
    return allocate_manual(db, plan.product_id, plan.branch_id, plan.picks)


def _execute_manufactured(db: Session, plan: ManufacturedLine) -> list[Deduction]:
    if plan.picks:
        deductions = allocate_manual(db, plan.raw_product_id, plan.branch_id, plan.picks)
    else:
        deductions = allocate_fifo(db, plan.raw_product_id, plan.branch_id, plan.required_raw_quantity)
    consumed = sum((d.quantity for d in deductions), ZERO)
    if consumed != plan.required_raw_quantity:
        raise AssignmentQuantityMismatch(
            f"consumed {consumed} of raw product {plan.raw_product_id}, required {plan.required_raw_quantity}"
        )
    return deductions


_EXECUTORS = {
    StandardLine: _execute_standard,
    FifoLine: _execute_fifo,
    ManualLine: _execute_manual,
    ManufacturedLine: _execute_manufactured,
}


def execute_plan(db: Session, plan: LinePlan) -> list[Deduction]:
    return _EXECUTORS[type(plan)](db, plan)


def propose_for_product(db: Session, product: Product, branch_id: int, quantity: Decimal) -> Proposal:
    if product.product_type == MANUFACTURED:
        recipe = get_recipe(db, product.id)
        return propose(db, recipe.raw_product_id, branch_id, required_raw_quantity(quantity, recipe))
    if product.product_type == RAW_TRACKED:
        return propose(db, product.id, branch_id, quantity)
    raise ValidationFailed(f"product {product.sku} is not batch tracked")
