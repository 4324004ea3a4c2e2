from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_engine import ledger
from erp_engine.db import unit_of_work
from erp_engine.errors import BusinessRuleViolation, NotFound, ValidationFailed
from erp_engine.logging_config import get_logger
from erp_engine.models import Contact, LedgerEntry, Payment, SalesOrder
from erp_engine.numeric import ZERO, money
from erp_engine.schemas import AdvanceCreate, LedgerAdjustmentCreate, PaymentCreate, RefundCreate

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _lock_payment(db: Session, payment_id: int) -> Payment:
    payment = (
        db.query(Payment)
        .filter(Payment.id == payment_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if payment is None:
        raise NotFound("payment", payment_id)
    return payment


def create_payment(db: Session, payload: PaymentCreate, actor: Optional[str] = None) -> Payment:
    """Record a payment awaiting confirmation. No ledger effect yet."""
    with unit_of_work(db):
        if db.get(Contact, payload.contact_id) is None:
            raise NotFound("contact", payload.contact_id)
        payment = Payment(
            contact_id=payload.contact_id,
            branch_id=payload.branch_id,
            kind="payment",
            amount=money(payload.amount),
            method=payload.method,
            status="pending_confirmation",
            reference=payload.reference,
            payment_date=payload.payment_date or _now(),
            created_by=actor,
            created_at=_now(),
        )
        db.add(payment)
        db.flush()
    return payment


def create_advance(db: Session, payload: AdvanceCreate, actor: Optional[str] = None) -> Payment:
    """Record an advance from a customer. Confirming it posts ADVANCE_PAYMENT."""
    with unit_of_work(db):
        customer = db.get(Contact, payload.customer_id)
        if customer is None:
            raise NotFound("customer", payload.customer_id)
        if customer.contact_type != "customer":
            raise ValidationFailed(f"contact {customer.id} is not a customer, advances are taken from customers only")
        payment = Payment(
            contact_id=customer.id,
            branch_id=payload.branch_id,
            kind="advance",
            amount=money(payload.amount),
            method=payload.method,
            status="pending_confirmation",
            reference=payload.reference,
            payment_date=payload.payment_date or _now(),
            created_by=actor,
            created_at=_now(),
        )
        db.add(payment)
        db.flush()
        logger.info("advance %s of %s logged for customer %s", payment.id, payment.amount, customer.id)
    return payment


def _open_invoices(db: Session, customer_id: int) -> list[SalesOrder]:
    """Unpaid invoices that the ledger balance already includes.

    An invoice counts once its INVOICE entry is posted. Orders still waiting
    for approval or for a backfill are not in the balance yet, so a payment
    cannot settle them.
    """
    posted = select(LedgerEntry.reference_id).where(
        LedgerEntry.reference_type == "sales_order", LedgerEntry.transaction_type == ledger.INVOICE
    )
    return (
        db.query(SalesOrder)
        .filter(
            SalesOrder.customer_id == customer_id,
            SalesOrder.order_type == "invoice",
            SalesOrder.payment_status.in_(("unpaid", "partial")),
            SalesOrder.id.in_(posted),
        )
        .order_by(SalesOrder.created_at, SalesOrder.id)
        .with_for_update()
        .all()
    )


def _settle_invoices(contact: Contact, open_orders: list[SalesOrder]) -> list[int]:
    """Mark the customer's oldest open invoices paid while credit covers them.

    ``ledger_balance`` already nets the open invoices, so the money available
    for them is their total minus the balance. The first invoice it cannot
    fully cover becomes ``partial``.
    """
    outstanding = sum((money(order.total_amount) for order in open_orders), ZERO)
    pool = outstanding - money(contact.ledger_balance)
    settled = []
    for order in open_orders:
        total = money(order.total_amount)
        if pool >= total:
            order.payment_status = "paid"
            pool -= total
            settled.append(order.id)
            continue
        if pool > ZERO:
            order.payment_status = "partial"
        break
    return settled


def confirm_payment(db: Session, payment_id: int, actor: Optional[str] = None) -> Payment:
    """Post a pending payment or advance to the ledger and settle open invoices."""
    with unit_of_work(db):
        payment = _lock_payment(db, payment_id)
        if payment.status != "pending_confirmation":
            raise ValidationFailed(f"payment {payment.id} is {payment.status}, only pending payments can be confirmed")
        contact = db.get(Contact, payment.contact_id)
        if contact is None:
            raise NotFound("contact", payment.contact_id)
        amount = money(payment.amount)
        is_customer = contact.contact_type == "customer"
        is_advance = payment.kind == "advance"
        label = "Advance payment" if is_advance else "Payment"
        # order headers are locked before the contact row
        open_orders = _open_invoices(db, contact.id) if is_customer else []
        ledger.append_entry(
            db,
            contact.id,
            transaction_type=ledger.ADVANCE_PAYMENT if is_advance else ledger.PAYMENT,
            debit=ZERO if is_customer else amount,
            credit=amount if is_customer else ZERO,
            branch_id=payment.branch_id,
            transaction_date=payment.payment_date,
            reference_type="payment",
            reference_id=payment.id,
            description=f"{label} {payment.reference or payment.id} ({payment.method})",
            created_by=actor,
        )
        payment.status = "confirmed"
        payment.confirmed_by = actor
        payment.confirmed_at = _now()
        if is_customer:
            settled = _settle_invoices(contact, open_orders)
            logger.info("payment %s confirmed, settled invoices %s", payment.id, settled)
    return payment


def void_payment(db: Session, payment_id: int, actor: Optional[str] = None) -> Payment:
    with unit_of_work(db):
        payment = _lock_payment(db, payment_id)
        if payment.status != "pending_confirmation":
            raise ValidationFailed(f"payment {payment.id} is {payment.status}, only pending payments can be voided")
        payment.status = "voided"
        logger.info("payment %s voided by %s", payment.id, actor)
    return payment


def process_refund(db: Session, payload: RefundCreate, actor: Optional[str] = None) -> list[LedgerEntry]:
    """Pay a customer back out of the credit they hold with us.

    The payout is a REFUND debit and the withdrawal fee a separate REFUND_FEE
    debit, so the customer receives ``refund_amount - withdrawal_fee`` in
    hand. Together the two cannot exceed the credit on the account.
    """
    with unit_of_work(db):
        customer = ledger.lock_contact(db, payload.customer_id)
        if customer.contact_type != "customer":
            raise ValidationFailed(f"contact {customer.id} is not a customer")
        refund_amount = money(payload.refund_amount)
        fee = money(payload.withdrawal_fee)
        available = max(-money(customer.ledger_balance), ZERO)
        if refund_amount + fee > available:
            raise BusinessRuleViolation(
                f"customer {customer.id} holds credit {available}, refund and fee need {refund_amount + fee}",
                details={"available": str(available), "requested": str(refund_amount + fee)},
            )
        when = _now()
        note = f" - {payload.reference}" if payload.reference else ""
        entries = [
            ledger.append_entry(
                db,
                customer.id,
                transaction_type=ledger.REFUND,
                debit=refund_amount,
                branch_id=payload.branch_id,
                transaction_date=when,
                reference_type="refund",
                description=f"Refund {payload.method}{note}",
                created_by=actor,
            )
        ]
        if fee > ZERO:
            entries.append(
                ledger.append_entry(
                    db,
                    customer.id,
                    transaction_type=ledger.REFUND_FEE,
                    debit=fee,
                    branch_id=payload.branch_id,
                    transaction_date=when,
                    reference_type="refund",
                    description=f"Withdrawal fee{note}",
                    created_by=actor,
                )
            )
        logger.info("refunded %s to customer %s, fee %s", refund_amount, customer.id, fee)
    return entries


def post_adjustment(db: Session, payload: LedgerAdjustmentCreate, actor: Optional[str] = None) -> LedgerEntry:
    """Manual ADJUSTMENT or OPENING_BALANCE entry."""
    with unit_of_work(db):
        entry = ledger.append_entry(
            db,
            payload.contact_id,
            transaction_type=payload.transaction_type,
            debit=payload.debit_amount,
            credit=payload.credit_amount,
            branch_id=payload.branch_id,
            transaction_date=payload.transaction_date,
            reference_type="adjustment",
            description=payload.description,
            created_by=actor,
        )
    return entry
