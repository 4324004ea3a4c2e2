from decimal import Decimal

import pytest

from erp_engine import allocation, stock
from erp_engine.errors import InsufficientStock, ValidationFailed
from erp_engine.models import StockAdjustment, StockTransfer
from erp_engine.schemas import BatchAdjust, BatchCreate, BatchTransfer


@pytest.fixture
def coil(factory):
    return factory.product("GI-COIL", "raw_tracked")


def test_register_batch_generates_code(db, factory, coil) -> None:
    branch = factory.branch()
    coil_type = factory.batch_type("Coil")

    batch = stock.register_batch(
        db, BatchCreate(product_id=coil.id, branch_id=branch.id, batch_type_id=coil_type.id, quantity="500")
    )

    assert batch.instance_code == "GI-COIL-Coil-001"
    assert batch.status == "in_stock"
    assert batch.initial_quantity == Decimal("500")


def test_untracked_product_has_no_batches(db, factory) -> None:
    branch = factory.branch()
    bolt = factory.product("BOLT")
    with pytest.raises(ValidationFailed):
        stock.register_batch(db, BatchCreate(product_id=bolt.id, branch_id=branch.id, instance_code="X-1", quantity="5"))


def test_batch_needs_code_or_type() -> None:
    with pytest.raises(ValueError):
        BatchCreate(product_id=1, branch_id=1, quantity="5")


def test_adjustment_is_recorded(db, factory, coil) -> None:
    batch = factory.batch(coil, factory.branch(), "100")

    stock.adjust_batch(db, batch.id, BatchAdjust(new_quantity="0", reason="stock count"), "storekeeper")

    db.expire_all()
    assert batch.remaining_quantity == 0
    assert batch.status == "depleted"
    [adjustment] = db.query(StockAdjustment).all()
    assert adjustment.old_quantity == Decimal("100")
    assert adjustment.created_by == "storekeeper"


def test_transfer_moves_batch(db, factory, coil) -> None:
    main, annex = factory.branch("Main"), factory.branch("Annex")
    batch = factory.batch(coil, main, "40")

    stock.transfer_batch(db, batch.id, BatchTransfer(to_branch_id=annex.id))

    db.expire_all()
    assert batch.branch_id == annex.id
    [transfer] = db.query(StockTransfer).all()
    assert (transfer.from_branch_id, transfer.to_branch_id) == (main.id, annex.id)
    with pytest.raises(ValidationFailed):
        stock.transfer_batch(db, batch.id, BatchTransfer(to_branch_id=annex.id))


def test_scrapped_batch_is_never_allocated(db, factory, coil) -> None:
    branch = factory.branch()
    batch = factory.batch(coil, branch, "40")

    stock.scrap_batch(db, batch.id, "rusted")

    db.expire_all()
    assert batch.status == "scrapped"
    with pytest.raises(InsufficientStock):
        allocation.allocate_fifo(db, coil.id, branch.id, Decimal("1"))
    db.rollback()
    with pytest.raises(InsufficientStock):
        allocation.allocate_manual(db, coil.id, branch.id, [allocation.Pick(batch.id, Decimal("1"))])
