"""Batch registration and direct stock operations outside of sales."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from erp_engine import sequences
from erp_engine.allocation import RAW_TRACKED, lock_batch
from erp_engine.db import get_or_raise, unit_of_work
from erp_engine.errors import DuplicateInstanceCode, ValidationFailed
from erp_engine.logging_config import get_logger
from erp_engine.models import Branch, InventoryBatch, Product, StockAdjustment, StockTransfer
from erp_engine.numeric import ZERO, qty
from erp_engine.schemas import BatchAdjust, BatchCreate, BatchTransfer

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_batch(
    db: Session,
    product: Product,
    branch_id: int,
    quantity: Decimal,
    *,
    batch_type_id: Optional[int] = None,
    instance_code: Optional[str] = None,
    purchase_item_id: Optional[int] = None,
) -> InventoryBatch:
    """Add a batch inside the caller's transaction.

    An explicit ``instance_code`` must be unused; otherwise one is generated
    from the product SKU and batch type.
    """
    if product.product_type != RAW_TRACKED:
        raise ValidationFailed(f"product {product.sku} is not batch tracked")
    if instance_code:
        instance_code = instance_code.strip()
        exists = db.query(InventoryBatch.id).filter(InventoryBatch.instance_code == instance_code).first()
        if exists:
            raise DuplicateInstanceCode(
                f"instance code {instance_code} is already in use",
                details={"instance_code": instance_code},
            )
    elif batch_type_id is not None:
        instance_code = sequences.next_instance_code(db, product, branch_id, batch_type_id)
    else:
        raise ValidationFailed(f"product {product.sku} needs an instance_code or batch_type_id")
    quantity = qty(quantity)
    batch = InventoryBatch(
        product_id=product.id,
        branch_id=branch_id,
        batch_type_id=batch_type_id,
        instance_code=instance_code,
        initial_quantity=quantity,
        remaining_quantity=quantity,
        status="in_stock" if quantity > ZERO else "depleted",
        purchase_item_id=purchase_item_id,
        created_at=_now(),
    )
    db.add(batch)
    # flushed so the next generated code in this transaction sees it
    db.flush()
    logger.info("batch %s registered with %s of product %s", batch.instance_code, quantity, product.id)
    return batch


def register_batch(db: Session, payload: BatchCreate) -> InventoryBatch:
    with unit_of_work(db):
        product = get_or_raise(db, Product, payload.product_id, "product")
        get_or_raise(db, Branch, payload.branch_id, "branch")
        batch = create_batch(
            db,
            product,
            payload.branch_id,
            payload.quantity,
            batch_type_id=payload.batch_type_id,
            instance_code=payload.instance_code,
        )
    return batch


def adjust_batch(db: Session, batch_id: int, payload: BatchAdjust, actor: Optional[str] = None) -> InventoryBatch:
    with unit_of_work(db):
        batch = lock_batch(db, batch_id)
        if batch.status == "scrapped":
            raise ValidationFailed(f"batch {batch.instance_code} is scrapped")
        old_quantity = qty(batch.remaining_quantity)
        new_quantity = qty(payload.new_quantity)
        batch.remaining_quantity = new_quantity
        batch.status = "in_stock" if new_quantity > ZERO else "depleted"
        db.add(
            StockAdjustment(
                batch_id=batch.id,
                old_quantity=old_quantity,
                new_quantity=new_quantity,
                reason=payload.reason,
                created_by=actor,
                created_at=_now(),
            )
        )
        logger.info("batch %s adjusted %s -> %s: %s", batch.instance_code, old_quantity, new_quantity, payload.reason)
    return batch


def transfer_batch(
    db: Session, batch_id: int, payload: BatchTransfer, actor: Optional[str] = None
) -> InventoryBatch:
    with unit_of_work(db):
        batch = lock_batch(db, batch_id)
        get_or_raise(db, Branch, payload.to_branch_id, "branch")
        if batch.branch_id == payload.to_branch_id:
            raise ValidationFailed(f"batch {batch.instance_code} is already in branch {payload.to_branch_id}")
        if batch.status != "in_stock":
            raise ValidationFailed(f"batch {batch.instance_code} is {batch.status} and cannot be transferred")
        db.add(
            StockTransfer(
                batch_id=batch.id,
                from_branch_id=batch.branch_id,
                to_branch_id=payload.to_branch_id,
                quantity=qty(batch.remaining_quantity),
                notes=payload.notes,
                created_by=actor,
                created_at=_now(),
            )
        )
        logger.info("batch %s moved from branch %s to %s", batch.instance_code, batch.branch_id, payload.to_branch_id)
        batch.branch_id = payload.to_branch_id
    return batch


def scrap_batch(db: Session, batch_id: int, reason: str, actor: Optional[str] = None) -> InventoryBatch:
    with unit_of_work(db):
        batch = lock_batch(db, batch_id)
        if batch.status == "scrapped":
            return batch
        # remaining quantity is kept as the written-off amount
        batch.status = "scrapped"
        logger.info("batch %s scrapped by %s with %s left: %s", batch.instance_code, actor, batch.remaining_quantity, reason)
    return batch
