import pytest

from erp_engine import production
from erp_engine.errors import InvalidStateTransition, ValidationFailed
from erp_engine.models import SalesOrder


def _order(status: str = "na") -> SalesOrder:
    return SalesOrder(invoice_number="INV-20260101-0001", order_type="invoice", production_status=status)


def test_happy_path_through_delivery() -> None:
    order = _order()
    assert production.transition(order, production.QUEUE)
    assert production.transition(order, production.PRODUCED, worker="Ali")
    assert order.produced_by == "Ali"
    assert order.produced_at is not None
    assert production.transition(order, production.DELIVERED, dispatcher=" Bilal ", vehicle_plate="LEA-1234")
    assert order.dispatcher_name == "Bilal"
    assert order.vehicle_plate == "LEA-1234"
    assert order.delivered_at is not None


def test_same_state_is_a_no_op() -> None:
    order = _order("queue")
    assert production.transition(order, production.QUEUE) is False
    assert order.production_status == "queue"


def test_cannot_skip_production() -> None:
    order = _order("queue")
    with pytest.raises(InvalidStateTransition) as excinfo:
        production.transition(order, production.DELIVERED, dispatcher="Bilal")
    assert excinfo.value.details["allowed"] == ["produced"]
    assert order.production_status == "queue"


def test_delivered_is_terminal() -> None:
    order = _order("delivered")
    for target in ("na", "queue", "produced", "pending_approval", "rejected"):
        with pytest.raises(InvalidStateTransition):
            production.transition(order, target)


def test_produced_needs_worker_name() -> None:
    order = _order("queue")
    with pytest.raises(ValidationFailed):
        production.transition(order, production.PRODUCED, worker="  ")
    assert order.production_status == "queue"
    assert order.produced_by is None


def test_delivery_needs_dispatcher() -> None:
    order = _order("produced")
    with pytest.raises(ValidationFailed):
        production.transition(order, production.DELIVERED)
    assert order.production_status == "produced"


def test_reject_and_resubmit_cycle() -> None:
    order = _order("pending_approval")
    with pytest.raises(ValidationFailed):
        production.transition(order, production.REJECTED)
    production.transition(order, production.REJECTED, reason="thickness not available")
    assert order.rejection_reason == "thickness not available"
    with pytest.raises(InvalidStateTransition):
        production.transition(order, production.QUEUE)
    production.transition(order, production.PENDING_APPROVAL)
    assert order.rejection_reason is None
    production.transition(order, production.QUEUE)
    assert order.production_status == "queue"


def test_unknown_status_is_rejected() -> None:
    with pytest.raises(InvalidStateTransition):
        production.transition(_order(), "shipped")


def test_can_transition_table() -> None:
    assert production.can_transition("na", "queue")
    assert production.can_transition("na", "pending_approval")
    assert production.can_transition("produced", "produced")
    assert not production.can_transition("produced", "queue")
    assert not production.can_transition("rejected", "queue")
