from decimal import Decimal

import pytest

from erp_engine import allocation
from erp_engine.allocation import FifoLine, ManualLine, ManufacturedLine, Pick, StandardLine
from erp_engine.errors import AssignmentQuantityMismatch, InsufficientStock, ProductMismatch
from erp_engine.schemas import ItemAssignmentIn


def _reload(db, *rows):
    db.expire_all()
    for row in rows:
        db.refresh(row)


def test_fifo_takes_oldest_batches_first(db, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    oldest = factory.batch(coil, branch, "30")
    middle = factory.batch(coil, branch, "50")
    newest = factory.batch(coil, branch, "40")

    deductions = allocation.allocate_fifo(db, coil.id, branch.id, Decimal("60"))
    db.commit()

    assert [(d.batch_id, d.quantity) for d in deductions] == [(oldest.id, Decimal("30")), (middle.id, Decimal("30"))]
    _reload(db, oldest, middle, newest)
    assert oldest.remaining_quantity == 0
    assert oldest.status == "depleted"
    assert middle.remaining_quantity == Decimal("20")
    assert middle.status == "in_stock"
    assert newest.remaining_quantity == Decimal("40")


def test_fifo_shortage_changes_nothing(db, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    first = factory.batch(coil, branch, "10")
    second = factory.batch(coil, branch, "5")

    with pytest.raises(InsufficientStock) as excinfo:
        allocation.allocate_fifo(db, coil.id, branch.id, Decimal("20"))
    db.rollback()

    assert excinfo.value.details["shortfall"] == "5.000"
    _reload(db, first, second)
    assert first.remaining_quantity == Decimal("10")
    assert second.remaining_quantity == Decimal("5")


def test_fifo_ignores_other_branches_and_scrapped_batches(db, factory) -> None:
    main, annex = factory.branch("Main"), factory.branch("Annex")
    coil = factory.product("COIL", "raw_tracked")
    elsewhere = factory.batch(coil, annex, "100")
    scrapped = factory.batch(coil, main, "100")
    scrapped.status = "scrapped"
    db.commit()
    usable = factory.batch(coil, main, "10")

    deductions = allocation.allocate_fifo(db, coil.id, main.id, Decimal("10"))

    assert [d.batch_id for d in deductions] == [usable.id]
    assert elsewhere.remaining_quantity == Decimal("100")


def test_manual_pick_of_wrong_product_is_rejected_before_any_deduction(db, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    wire = factory.product("WIRE", "raw_tracked")
    good = factory.batch(coil, branch, "50")
    foreign = factory.batch(wire, branch, "50")

    picks = [Pick(good.id, Decimal("10")), Pick(foreign.id, Decimal("5"))]
    with pytest.raises(ProductMismatch):
        allocation.allocate_manual(db, coil.id, branch.id, picks)
    db.rollback()

    _reload(db, good, foreign)
    assert good.remaining_quantity == Decimal("50")
    assert foreign.remaining_quantity == Decimal("50")


def test_manual_picks_on_same_batch_are_checked_together(db, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    batch = factory.batch(coil, branch, "10")

    with pytest.raises(InsufficientStock):
        allocation.allocate_manual(db, coil.id, branch.id, [Pick(batch.id, Decimal("6")), Pick(batch.id, Decimal("6"))])
    db.rollback()
    _reload(db, batch)
    assert batch.remaining_quantity == Decimal("10")


def test_exact_depletion_and_restore_flip_status(db, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    batch = factory.batch(coil, branch, "25")

    allocation.deduct(batch, Decimal("25"))
    assert batch.status == "depleted"
    assert batch.remaining_quantity == 0

    allocation.restore(batch, Decimal("5"))
    assert batch.status == "in_stock"
    assert batch.remaining_quantity == Decimal("5")

    batch.status = "scrapped"
    allocation.restore(batch, Decimal("1"))
    assert batch.status == "scrapped"


def test_plan_line_dispatches_on_product_type(db, factory) -> None:
    branch = factory.branch()
    bolt = factory.product("BOLT")
    coil = factory.product("COIL", "raw_tracked")
    sheet = factory.product("SHEET", "manufactured_virtual")
    factory.recipe(sheet, coil, "2.5")
    batch = factory.batch(coil, branch, "100")

    assert isinstance(allocation.plan_line(db, bolt, branch.id, Decimal("4")), StandardLine)
    assert isinstance(allocation.plan_line(db, coil, branch.id, Decimal("4")), FifoLine)
    manual = allocation.plan_line(db, coil, branch.id, Decimal("4"), [ItemAssignmentIn(batch_id=batch.id, quantity="4")])
    assert isinstance(manual, ManualLine)
    manufactured = allocation.plan_line(db, sheet, branch.id, Decimal("10"))
    assert isinstance(manufactured, ManufacturedLine)
    assert manufactured.raw_product_id == coil.id
    assert manufactured.required_raw_quantity == Decimal("25.000")


def test_manufactured_line_consumes_raw_material_by_conversion_factor(db, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    sheet = factory.product("SHEET", "manufactured_virtual")
    factory.recipe(sheet, coil, "2.5")
    coil_a = factory.batch(coil, branch, "100", code="COIL-A")

    plan = allocation.plan_line(
        db, sheet, branch.id, Decimal("10"), [ItemAssignmentIn(batch_id=coil_a.id, quantity="25")]
    )
    deductions = allocation.execute_plan(db, plan)
    db.commit()

    assert [(d.instance_code, d.quantity) for d in deductions] == [("COIL-A", Decimal("25"))]
    _reload(db, coil_a)
    assert coil_a.remaining_quantity == Decimal("75")
    assert coil_a.status == "in_stock"


def test_manufactured_picks_must_match_required_quantity(db, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    sheet = factory.product("SHEET", "manufactured_virtual")
    factory.recipe(sheet, coil, "2.5")
    batch = factory.batch(coil, branch, "100")

    with pytest.raises(AssignmentQuantityMismatch):
        allocation.plan_line(db, sheet, branch.id, Decimal("10"), [ItemAssignmentIn(batch_id=batch.id, quantity="20")])


def test_proposal_reports_shortfall_without_touching_stock(db, factory) -> None:
    branch = factory.branch()
    coil = factory.product("COIL", "raw_tracked")
    first = factory.batch(coil, branch, "30")
    second = factory.batch(coil, branch, "20")

    proposal = allocation.propose(db, coil.id, branch.id, Decimal("60"))

    assert [(s.batch_id, s.quantity) for s in proposal.suggestions] == [
        (first.id, Decimal("30")),
        (second.id, Decimal("20")),
    ]
    assert proposal.shortfall == Decimal("10")
    assert not proposal.satisfiable
    _reload(db, first, second)
    assert first.remaining_quantity == Decimal("30")
