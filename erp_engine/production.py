"""Production workflow of a sales order, from approval through delivery."""

from datetime import datetime, timezone
from typing import Optional

from erp_engine.errors import InvalidStateTransition, ValidationFailed
from erp_engine.logging_config import get_logger
from erp_engine.models import SalesOrder

logger = get_logger(__name__)

NA = "na"
PENDING_APPROVAL = "pending_approval"
REJECTED = "rejected"
QUEUE = "queue"
PRODUCED = "produced"
DELIVERED = "delivered"

TRANSITIONS: dict[str, frozenset[str]] = {
    NA: frozenset({QUEUE, PENDING_APPROVAL}),
    PENDING_APPROVAL: frozenset({QUEUE, REJECTED}),
    REJECTED: frozenset({PENDING_APPROVAL}),
    QUEUE: frozenset({PRODUCED}),
    PRODUCED: frozenset({DELIVERED}),
    DELIVERED: frozenset(),
}

# Orders in these states have consumed material and cannot be cancelled.
LOCKED_STATES = frozenset({PRODUCED, DELIVERED})


def allowed_targets(current: str) -> frozenset[str]:
    if current not in TRANSITIONS:
        raise InvalidStateTransition(f"unknown production status {current!r}")
    return TRANSITIONS[current]


def can_transition(current: str, target: str) -> bool:
    return current == target or target in allowed_targets(current)


def _required(value: Optional[str], label: str) -> str:
    if value is None or not value.strip():
        raise ValidationFailed(f"{label} is required")
    return value.strip()


def transition(
    order: SalesOrder,
    target: str,
    *,
    worker: Optional[str] = None,
    dispatcher: Optional[str] = None,
    vehicle_plate: Optional[str] = None,
    signature: Optional[str] = None,
    reason: Optional[str] = None,
) -> bool:
    """Move ``order`` to ``target``. Returns False when it was already there.

    The caller must hold the order's row lock. Required fields for the target
    state are checked before anything on the order changes.
    """
    current = order.production_status
    if target not in TRANSITIONS:
        raise InvalidStateTransition(f"unknown production status {target!r}")
    if current == target:
        return False
    allowed = allowed_targets(current)
    if target not in allowed:
        allowed_text = ", ".join(sorted(allowed)) or "none (terminal)"
        raise InvalidStateTransition(
            f"order {order.invoice_number} cannot move from {current} to {target}; allowed: {allowed_text}",
            details={"from": current, "to": target, "allowed": sorted(allowed)},
        )

    if target == PRODUCED:
        order.produced_by = _required(worker, "worker name")
        order.produced_at = datetime.now(timezone.utc)
    elif target == DELIVERED:
        order.dispatcher_name = _required(dispatcher, "dispatcher name")
        order.vehicle_plate = vehicle_plate.strip() if vehicle_plate else None
        order.delivery_signature = signature or None
        order.delivered_at = datetime.now(timezone.utc)
    elif target == REJECTED:
        order.rejection_reason = _required(reason, "rejection reason")
    elif target == PENDING_APPROVAL:
        order.rejection_reason = None

    order.production_status = target
    logger.info("order %s production status %s -> %s", order.invoice_number, current, target)
    return True
