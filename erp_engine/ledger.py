"""
Contact ledger: an append-only log of signed entries with running balances.

Each (contact, branch) pair is its own stream, ordered by
``(transaction_date, id)``. ``running_balance`` on an entry is the stream
balance after that entry; ``Contact.ledger_balance`` is the sum over all of
the contact's streams. Positive means the contact owes us, negative means we
owe the contact (credit).

Entries are never edited. A cancelled transaction deletes its entries and
the affected stream is replayed from the deleted entry's date. Replay starts
from the running balance of the last entry strictly before that date, so
earlier entries are never rewritten.
"""

from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from erp_engine.errors import LedgerError, NotFound
from erp_engine.logging_config import get_logger
from erp_engine.models import Contact, LedgerEntry, SalesOrder
from erp_engine.numeric import ZERO, money

logger = get_logger(__name__)

INVOICE = "INVOICE"
PAYMENT = "PAYMENT"
RETURN = "RETURN"
ADJUSTMENT = "ADJUSTMENT"
OPENING_BALANCE = "OPENING_BALANCE"
ADVANCE_PAYMENT = "ADVANCE_PAYMENT"
REFUND = "REFUND"
REFUND_FEE = "REFUND_FEE"

TRANSACTION_TYPES = frozenset(
    {INVOICE, PAYMENT, RETURN, ADJUSTMENT, OPENING_BALANCE, ADVANCE_PAYMENT, REFUND, REFUND_FEE}
)


def _utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def lock_contact(db: Session, contact_id: int) -> Contact:
    contact = (
        db.query(Contact)
        .filter(Contact.id == contact_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if contact is None:
        raise NotFound("contact", contact_id)
    return contact


def _stream(db: Session, contact_id: int, branch_id: Optional[int]):
    query = db.query(LedgerEntry).filter(LedgerEntry.contact_id == contact_id)
    if branch_id is None:
        return query.filter(LedgerEntry.branch_id.is_(None))
    return query.filter(LedgerEntry.branch_id == branch_id)


def _total_balance(db: Session, contact_id: int) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(LedgerEntry.debit_amount - LedgerEntry.credit_amount), 0)).where(
            LedgerEntry.contact_id == contact_id
        )
    ).scalar_one()
    return money(total)


def _replay_stream(
    db: Session, contact_id: int, branch_id: Optional[int], from_date: Optional[datetime] = None
) -> Decimal:
    stream = _stream(db, contact_id, branch_id)
    balance = ZERO
    if from_date is not None:
        anchor = (
            stream.filter(LedgerEntry.transaction_date < from_date)
            .order_by(LedgerEntry.transaction_date.desc(), LedgerEntry.id.desc())
            .first()
        )
        if anchor is not None:
            balance = money(anchor.running_balance)
        stream = stream.filter(LedgerEntry.transaction_date >= from_date)
    for entry in stream.order_by(LedgerEntry.transaction_date, LedgerEntry.id).all():
        balance = balance + money(entry.debit_amount) - money(entry.credit_amount)
        entry.running_balance = balance
    db.flush()
    return balance


def append_entry(
    db: Session,
    contact_id: int,
    *,
    transaction_type: str,
    debit: Any = 0,
    credit: Any = 0,
    branch_id: Optional[int] = None,
    transaction_date: Optional[datetime] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    description: Optional[str] = None,
    created_by: Optional[str] = None,
) -> LedgerEntry:
    """Append one entry and update the contact balance.

    Exactly one of ``debit``/``credit`` must be positive. An entry dated
    before the newest entry of its stream triggers a replay of the stream
    from its date.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise LedgerError(f"unknown ledger transaction type {transaction_type!r}")
    debit, credit = money(debit), money(credit)
    if debit < ZERO or credit < ZERO:
        raise LedgerError("ledger amounts cannot be negative")
    if (debit > ZERO) == (credit > ZERO):
        raise LedgerError("a ledger entry needs exactly one of debit or credit")

    contact = lock_contact(db, contact_id)
    when = _utc(transaction_date)
    stream = _stream(db, contact_id, branch_id)
    backdated = db.query(stream.filter(LedgerEntry.transaction_date > when).exists()).scalar()
    last = stream.order_by(LedgerEntry.transaction_date.desc(), LedgerEntry.id.desc()).first()
    prior = money(last.running_balance) if last is not None else ZERO

    entry = LedgerEntry(
        contact_id=contact_id,
        branch_id=branch_id,
        transaction_date=when,
        transaction_type=transaction_type,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        debit_amount=debit,
        credit_amount=credit,
        running_balance=prior + debit - credit,
        created_by=created_by,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    db.flush()
    if backdated:
        _replay_stream(db, contact_id, branch_id, from_date=when)
    contact.ledger_balance = money(contact.ledger_balance) + debit - credit
    logger.info(
        "ledger %s contact=%s branch=%s debit=%s credit=%s balance=%s%s",
        transaction_type,
        contact_id,
        branch_id,
        debit,
        credit,
        contact.ledger_balance,
        " (backdated)" if backdated else "",
    )
    return entry


def reverse_entries(db: Session, reference_type: str, reference_id: int) -> int:
    """Delete every entry of a transaction and replay the streams it was in."""
    entries = (
        db.query(LedgerEntry)
        .filter(LedgerEntry.reference_type == reference_type, LedgerEntry.reference_id == reference_id)
        .order_by(LedgerEntry.contact_id, LedgerEntry.id)
        .all()
    )
    for entry in entries:
        contact = lock_contact(db, entry.contact_id)
        entry_id, contact_id, branch_id = entry.id, entry.contact_id, entry.branch_id
        when = entry.transaction_date
        db.delete(entry)
        db.flush()
        _replay_stream(db, contact_id, branch_id, from_date=when)
        contact.ledger_balance = _total_balance(db, contact_id)
        logger.info(
            "ledger entry %s for %s %s reversed, contact %s balance %s",
            entry_id,
            reference_type,
            reference_id,
            contact_id,
            contact.ledger_balance,
        )
    return len(entries)


def recalculate(
    db: Session, contact_id: int, branch_id: Optional[int] = None, from_date: Optional[datetime] = None
) -> Decimal:
    """Replay one stream (from ``from_date`` when given) and resync the contact balance."""
    contact = lock_contact(db, contact_id)
    _replay_stream(db, contact_id, branch_id, from_date=_utc(from_date) if from_date else None)
    contact.ledger_balance = _total_balance(db, contact_id)
    return money(contact.ledger_balance)


def rebuild_contact(db: Session, contact_id: int) -> Decimal:
    """Replay every stream of a contact from zero."""
    contact = lock_contact(db, contact_id)
    branch_ids = db.execute(
        select(LedgerEntry.branch_id).where(LedgerEntry.contact_id == contact_id).distinct()
    ).scalars()
    for branch_id in list(branch_ids):
        _replay_stream(db, contact_id, branch_id)
    contact.ledger_balance = _total_balance(db, contact_id)
    return money(contact.ledger_balance)


def rebuild_all(db: Session) -> dict[int, Decimal]:
    balances = {}
    for contact_id in db.execute(select(Contact.id).order_by(Contact.id)).scalars().all():
        balances[contact_id] = rebuild_contact(db, contact_id)
    logger.info("rebuilt ledger balances for %d contact(s)", len(balances))
    return balances


def apply_auto_payment(db: Session, order: SalesOrder) -> bool:
    """Mark ``order`` paid when the customer's existing credit covers it.

    Must run before the invoice entry is appended.
    """
    if order.customer_id is None or order.payment_status == "paid":
        return False
    contact = lock_contact(db, order.customer_id)
    total = money(order.total_amount)
    if total > ZERO and money(contact.ledger_balance) <= -total:
        order.payment_status = "paid"
        logger.info(
            "order %s auto-paid from customer %s credit %s",
            order.invoice_number,
            contact.id,
            contact.ledger_balance,
        )
        return True
    return False


def post_invoice(db: Session, order: SalesOrder, created_by: Optional[str] = None) -> Optional[LedgerEntry]:
    """Auto-payment check plus the INVOICE debit for a customer order."""
    if order.customer_id is None or money(order.total_amount) <= ZERO:
        return None
    apply_auto_payment(db, order)
    return append_entry(
        db,
        order.customer_id,
        transaction_type=INVOICE,
        debit=order.total_amount,
        branch_id=order.branch_id,
        transaction_date=order.created_at,
        reference_type="sales_order",
        reference_id=order.id,
        description=f"Invoice {order.invoice_number}",
        created_by=created_by,
    )


def backfill_invoices(db: Session) -> list[int]:
    """Post the missing INVOICE entry of every customer invoice that lacks one."""
    posted = (
        select(LedgerEntry.reference_id)
        .where(LedgerEntry.reference_type == "sales_order", LedgerEntry.transaction_type == INVOICE)
    )
    orders = (
        db.query(SalesOrder)
        .filter(
            SalesOrder.order_type == "invoice",
            SalesOrder.customer_id.is_not(None),
            SalesOrder.total_amount > 0,
            SalesOrder.production_status.not_in(("pending_approval", "rejected")),
            SalesOrder.id.not_in(posted),
        )
        .order_by(SalesOrder.created_at, SalesOrder.id)
        .all()
    )
    for order in orders:
        append_entry(
            db,
            order.customer_id,
            transaction_type=INVOICE,
            debit=order.total_amount,
            branch_id=order.branch_id,
            transaction_date=order.created_at,
            reference_type="sales_order",
            reference_id=order.id,
            description=f"Invoice {order.invoice_number}",
        )
    if orders:
        logger.info("backfilled %d missing invoice ledger entr(ies)", len(orders))
    return [order.id for order in orders]


def statement(
    db: Session,
    contact_id: int,
    branch_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[LedgerEntry]:
    if db.get(Contact, contact_id) is None:
        raise NotFound("contact", contact_id)
    query = db.query(LedgerEntry).filter(LedgerEntry.contact_id == contact_id)
    if branch_id is not None:
        query = query.filter(LedgerEntry.branch_id == branch_id)
    if start is not None:
        query = query.filter(LedgerEntry.transaction_date >= _utc(start))
    if end is not None:
        query = query.filter(LedgerEntry.transaction_date <= _utc(end))
    return query.order_by(LedgerEntry.transaction_date, LedgerEntry.id).all()
