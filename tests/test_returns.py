from decimal import Decimal

import pytest

from erp_engine import returns, sales
from erp_engine.errors import BusinessRuleViolation, ValidationFailed
from erp_engine.models import ItemAssignment, SalesOrder, SalesReturn, SalesReturnItem
from erp_engine.schemas import SaleCreate, SalesReturnCreate


@pytest.fixture
def sold(db, factory, actor):
    branch = factory.branch()
    customer = factory.customer()
    coil = factory.product("COIL", "raw_tracked")
    sheet = factory.product("SHEET", "manufactured_virtual")
    factory.recipe(sheet, coil, "2")
    coil_a = factory.batch(coil, branch, "30", code="COIL-A")
    coil_b = factory.batch(coil, branch, "30", code="COIL-B")
    order = sales.create_sale(
        db,
        SaleCreate(
            customer_id=customer.id,
            branch_id=branch.id,
            items=[{"product_id": sheet.id, "quantity": "20", "unit_price": "100"}],
        ),
        actor,
    )
    [item] = sales.order_items(db, order.id)
    return {"order": order, "item": item, "customer": customer, "coil_a": coil_a, "coil_b": coil_b}


def _request(sold, quantity) -> SalesReturnCreate:
    return SalesReturnCreate(
        sales_order_id=sold["order"].id,
        items=[{"item_id": sold["item"].id, "quantity": quantity}],
        reason="damaged sheet",
    )


def test_sale_consumed_both_batches(db, sold) -> None:
    db.expire_all()
    assert sold["coil_a"].remaining_quantity == 0
    assert sold["coil_b"].remaining_quantity == Decimal("20")
    assert sold["customer"].ledger_balance == Decimal("2000.00")


def test_pending_return_changes_nothing(db, sold, actor) -> None:
    ret = returns.create_sales_return(db, _request(sold, "5"), actor)

    db.expire_all()
    assert ret.return_number.startswith("RET-")
    assert ret.status == "pending"
    assert ret.total_amount == Decimal("500.00")
    assert sold["coil_a"].remaining_quantity == 0
    assert sold["customer"].ledger_balance == Decimal("2000.00")


def test_approved_return_restores_picks_proportionally(db, sold, actor) -> None:
    ret = returns.create_sales_return(db, _request(sold, "5"), actor)
    returns.approve_sales_return(db, ret.id, actor)

    db.expire_all()
    # a quarter of the line: 7.5 back on A, 2.5 back on B
    assert sold["coil_a"].remaining_quantity == Decimal("7.5")
    assert sold["coil_a"].status == "in_stock"
    assert sold["coil_b"].remaining_quantity == Decimal("22.5")
    assert sold["item"].returned_quantity == Decimal("5")
    assert sold["customer"].ledger_balance == Decimal("1500.00")
    deducted = sorted(a.quantity_deducted for a in db.query(ItemAssignment).all())
    assert deducted == [Decimal("7.5"), Decimal("22.5")]


def test_full_return_removes_assignments(db, sold, actor) -> None:
    first = returns.create_sales_return(db, _request(sold, "5"), actor)
    returns.approve_sales_return(db, first.id, actor)
    rest = returns.create_sales_return(db, _request(sold, "15"), actor)
    returns.approve_sales_return(db, rest.id, actor)

    db.expire_all()
    assert sold["coil_a"].remaining_quantity == Decimal("30")
    assert sold["coil_b"].remaining_quantity == Decimal("30")
    assert db.query(ItemAssignment).count() == 0
    assert sold["customer"].ledger_balance == 0


def test_pending_returns_count_against_returnable_quantity(db, sold, actor) -> None:
    returns.create_sales_return(db, _request(sold, "15"), actor)
    with pytest.raises(ValidationFailed):
        returns.create_sales_return(db, _request(sold, "6"), actor)


def test_cancelled_return_frees_quantity(db, sold, actor) -> None:
    ret = returns.create_sales_return(db, _request(sold, "20"), actor)
    returns.cancel_sales_return(db, ret.id, actor)

    with pytest.raises(BusinessRuleViolation):
        returns.approve_sales_return(db, ret.id, actor)
    again = returns.create_sales_return(db, _request(sold, "20"), actor)
    assert again.status == "pending"


def test_order_with_returns_cannot_be_cancelled(db, sold, actor) -> None:
    returns.create_sales_return(db, _request(sold, "1"), actor)
    with pytest.raises(BusinessRuleViolation):
        sales.cancel_sale(db, sold["order"].id, actor)


def test_order_with_only_cancelled_returns_can_be_cancelled(db, sold, actor) -> None:
    ret = returns.create_sales_return(db, _request(sold, "5"), actor)
    returns.cancel_sales_return(db, ret.id, actor)
    order_id = sold["order"].id

    result = sales.cancel_sale(db, order_id, actor)

    db.expire_all()
    assert result["ledger_entries_reversed"] == 1
    assert db.get(SalesOrder, order_id) is None
    assert db.query(SalesReturn).count() == 0
    assert db.query(SalesReturnItem).count() == 0
    assert sold["coil_a"].remaining_quantity == Decimal("30")
    assert sold["coil_b"].remaining_quantity == Decimal("30")
    assert sold["customer"].ledger_balance == 0
