from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from erp_engine import ledger, payments, purchases, returns, sales, stock
from erp_engine.allocation import Proposal
from erp_engine.db import SessionLocal, get_or_raise, unit_of_work
from erp_engine.errors import EngineError
from erp_engine.logging_config import get_logger, setup_logging
from erp_engine.models import (
    Contact,
    InventoryBatch,
    ItemAssignment,
    LedgerEntry,
    Payment,
    Purchase,
    PurchaseReturn,
    PurchaseReturnItem,
    SalesOrder,
    SalesReturn,
    SalesReturnItem,
)
from erp_engine.schemas import (
    Actor,
    AdvanceCreate,
    AllocationPreview,
    BatchAdjust,
    BatchCreate,
    BatchScrap,
    BatchTransfer,
    DeliveryCreate,
    LedgerAdjustmentCreate,
    LedgerRecalculate,
    MaterialAssign,
    PaymentCreate,
    ProductionStatusUpdate,
    PurchaseCreate,
    PurchaseReturnCreate,
    RefundCreate,
    RejectionCreate,
    SaleConvert,
    SaleCreate,
    SalesReturnCreate,
)

setup_logging()
logger = get_logger(__name__)

app = FastAPI(title="ERP Transaction Engine")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_permissions: Optional[str] = Header(default=None),
) -> Actor:
    permissions = frozenset(p.strip() for p in (x_permissions or "").split(",") if p.strip())
    return Actor(user_id=x_user_id, permissions=permissions)


@app.exception_handler(EngineError)
def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    meta = _meta()
    if exc.status_code >= 500 or exc.retryable:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict(), "meta": meta})


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _num(value) -> Optional[float]:
    return float(value) if value is not None else None


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


# --- serializers -----------------------------------------------------------


def _batch_data(batch: InventoryBatch) -> dict:
    return {
        "batch_id": batch.id,
        "product_id": batch.product_id,
        "branch_id": batch.branch_id,
        "batch_type_id": batch.batch_type_id,
        "instance_code": batch.instance_code,
        "initial_quantity": _num(batch.initial_quantity),
        "remaining_quantity": _num(batch.remaining_quantity),
        "status": batch.status,
        "created_at": _iso(batch.created_at),
    }


def _order_summary(order: SalesOrder) -> dict:
    return {
        "sales_order_id": order.id,
        "invoice_number": order.invoice_number,
        "order_type": order.order_type,
        "customer_id": order.customer_id,
        "branch_id": order.branch_id,
        "payment_status": order.payment_status,
        "production_status": order.production_status,
        "total_amount": _num(order.total_amount),
        "valid_until": _iso(order.valid_until),
        "created_at": _iso(order.created_at),
    }


def _order_data(db: Session, order: SalesOrder) -> dict:
    data = _order_summary(order)
    data.update(
        {
            "notes": order.notes,
            "produced_by": order.produced_by,
            "dispatcher_name": order.dispatcher_name,
            "vehicle_plate": order.vehicle_plate,
            "delivery_signature": order.delivery_signature,
            "delivered_at": _iso(order.delivered_at),
            "approved_by": order.approved_by,
            "rejection_reason": order.rejection_reason,
        }
    )
    items = []
    for item in sales.order_items(db, order.id):
        assignments = (
            db.query(ItemAssignment).filter(ItemAssignment.sales_item_id == item.id).order_by(ItemAssignment.id).all()
        )
        items.append(
            {
                "item_id": item.id,
                "product_id": item.product_id,
                "quantity": _num(item.quantity),
                "unit_price": _num(item.unit_price),
                "subtotal": _num(item.subtotal),
                "returned_quantity": _num(item.returned_quantity),
                "assignments": [
                    {"batch_id": a.inventory_batch_id, "quantity_deducted": _num(a.quantity_deducted)}
                    for a in assignments
                ],
            }
        )
    data["items"] = items
    return data


def _purchase_data(db: Session, purchase: Purchase) -> dict:
    return {
        "purchase_id": purchase.id,
        "purchase_number": purchase.purchase_number,
        "supplier_id": purchase.supplier_id,
        "branch_id": purchase.branch_id,
        "payment_status": purchase.payment_status,
        "total_amount": _num(purchase.total_amount),
        "created_at": _iso(purchase.created_at),
        "items": [
            {
                "item_id": item.id,
                "product_id": item.product_id,
                "quantity": _num(item.quantity),
                "unit_cost": _num(item.unit_cost),
                "subtotal": _num(item.subtotal),
                "returned_quantity": _num(item.returned_quantity),
                "batch_id": item.inventory_batch_id,
            }
            for item in purchases.purchase_items(db, purchase.id)
        ],
    }


def _sales_return_data(db: Session, ret: SalesReturn) -> dict:
    lines = db.query(SalesReturnItem).filter(SalesReturnItem.sales_return_id == ret.id).order_by(SalesReturnItem.id)
    return {
        "return_id": ret.id,
        "return_number": ret.return_number,
        "sales_order_id": ret.sales_order_id,
        "customer_id": ret.customer_id,
        "status": ret.status,
        "reason": ret.reason,
        "total_amount": _num(ret.total_amount),
        "approved_by": ret.approved_by,
        "approved_at": _iso(ret.approved_at),
        "items": [{"item_id": line.sales_item_id, "quantity": _num(line.quantity)} for line in lines],
    }


def _purchase_return_data(db: Session, ret: PurchaseReturn) -> dict:
    lines = (
        db.query(PurchaseReturnItem)
        .filter(PurchaseReturnItem.purchase_return_id == ret.id)
        .order_by(PurchaseReturnItem.id)
    )
    return {
        "return_id": ret.id,
        "return_number": ret.return_number,
        "purchase_id": ret.purchase_id,
        "supplier_id": ret.supplier_id,
        "status": ret.status,
        "reason": ret.reason,
        "total_amount": _num(ret.total_amount),
        "approved_by": ret.approved_by,
        "approved_at": _iso(ret.approved_at),
        "items": [{"item_id": line.purchase_item_id, "quantity": _num(line.quantity)} for line in lines],
    }


def _payment_data(payment: Payment) -> dict:
    return {
        "payment_id": payment.id,
        "contact_id": payment.contact_id,
        "branch_id": payment.branch_id,
        "kind": payment.kind,
        "amount": _num(payment.amount),
        "method": payment.method,
        "status": payment.status,
        "reference": payment.reference,
        "payment_date": _iso(payment.payment_date),
        "confirmed_by": payment.confirmed_by,
    }


def _entry_data(entry: LedgerEntry) -> dict:
    return {
        "entry_id": entry.id,
        "contact_id": entry.contact_id,
        "branch_id": entry.branch_id,
        "transaction_date": _iso(entry.transaction_date),
        "transaction_type": entry.transaction_type,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "description": entry.description,
        "debit_amount": _num(entry.debit_amount),
        "credit_amount": _num(entry.credit_amount),
        "running_balance": _num(entry.running_balance),
    }


def _proposal_data(proposal: Proposal) -> dict:
    return {
        "product_id": proposal.product_id,
        "branch_id": proposal.branch_id,
        "required_quantity": _num(proposal.required_quantity),
        "shortfall": _num(proposal.shortfall),
        "satisfiable": proposal.satisfiable,
        "suggestions": [
            {
                "batch_id": s.batch_id,
                "instance_code": s.instance_code,
                "available": _num(s.available),
                "quantity": _num(s.quantity),
            }
            for s in proposal.suggestions
        ],
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


# --- sales -----------------------------------------------------------------


@app.post("/api/v1/sales", tags=["Sales"])
def create_sale(
    payload: SaleCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    order = sales.create_sale(db, payload, actor)
    return {"data": _order_data(db, order), "meta": _meta()}


@app.get("/api/v1/sales/{order_id}", tags=["Sales"])
def get_sale(order_id: int, db: Session = Depends(get_db)) -> dict:
    order = get_or_raise(db, SalesOrder, order_id, "sales order")
    return {"data": _order_data(db, order), "meta": _meta()}


@app.get("/api/v1/sales", tags=["Sales"])
def list_sales(
    branch_id: Optional[int] = Query(default=None),
    customer_id: Optional[int] = Query(default=None),
    order_type: Optional[str] = Query(default=None),
    payment_status: Optional[str] = Query(default=None),
    production_status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(SalesOrder)
    if branch_id is not None:
        query = query.filter(SalesOrder.branch_id == branch_id)
    if customer_id is not None:
        query = query.filter(SalesOrder.customer_id == customer_id)
    if order_type is not None:
        query = query.filter(SalesOrder.order_type == order_type)
    if payment_status is not None:
        query = query.filter(SalesOrder.payment_status == payment_status)
    if production_status is not None:
        query = query.filter(SalesOrder.production_status == production_status)
    orders, next_cursor = _paginate_by_id(query, SalesOrder, limit, cursor)
    data = [_order_summary(order) for order in orders]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/sales/{order_id}/cancel", tags=["Sales"])
def cancel_sale(order_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)) -> dict:
    return {"data": sales.cancel_sale(db, order_id, actor), "meta": _meta()}


@app.post("/api/v1/sales/{order_id}/convert", tags=["Sales"])
def convert_sale(
    order_id: int,
    payload: Optional[SaleConvert] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> dict:
    order = sales.convert_to_invoice(db, order_id, payload or SaleConvert(), actor)
    return {"data": _order_data(db, order), "meta": _meta()}


@app.post("/api/v1/sales/{order_id}/production-status", tags=["Production"])
def update_production_status(
    order_id: int,
    payload: ProductionStatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> dict:
    order = sales.update_production_status(db, order_id, payload, actor)
    return {"data": _order_summary(order), "meta": _meta()}


@app.post("/api/v1/sales/{order_id}/deliver", tags=["Production"])
def deliver_sale(
    order_id: int, payload: DeliveryCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    order = sales.mark_delivered(db, order_id, payload, actor)
    return {"data": _order_data(db, order), "meta": _meta()}


@app.post("/api/v1/sales/{order_id}/approve", tags=["Production"])
def approve_manufacturing(order_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)) -> dict:
    order = sales.approve_manufacturing(db, order_id, actor)
    return {"data": _order_summary(order), "meta": _meta()}


@app.post("/api/v1/sales/{order_id}/reject", tags=["Production"])
def reject_manufacturing(
    order_id: int, payload: RejectionCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    order = sales.reject_manufacturing(db, order_id, payload.reason, actor)
    return {"data": {**_order_summary(order), "rejection_reason": order.rejection_reason}, "meta": _meta()}


@app.post("/api/v1/sales/{order_id}/resubmit", tags=["Production"])
def resubmit_manufacturing(order_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)) -> dict:
    order = sales.resubmit_manufacturing(db, order_id, actor)
    return {"data": _order_summary(order), "meta": _meta()}


@app.post("/api/v1/sales/items/{sales_item_id}/material", tags=["Production"])
def assign_material(
    sales_item_id: int, payload: MaterialAssign, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    item = sales.assign_material(db, sales_item_id, payload, actor)
    order = get_or_raise(db, SalesOrder, item.sales_order_id, "sales order")
    return {"data": _order_data(db, order), "meta": _meta()}

# --- inventory -------------------------------------------------------------


@app.post("/api/v1/inventory/allocation-proposals", tags=["Inventory"])
def propose_allocation(payload: AllocationPreview, db: Session = Depends(get_db)) -> dict:
    return {"data": _proposal_data(sales.propose_allocation(db, payload)), "meta": _meta()}


@app.post("/api/v1/inventory/batches", tags=["Inventory"])
def register_batch(payload: BatchCreate, db: Session = Depends(get_db)) -> dict:
    batch = stock.register_batch(db, payload)
    return {"data": _batch_data(batch), "meta": _meta()}


@app.get("/api/v1/inventory/batches/{batch_id}", tags=["Inventory"])
def get_batch(batch_id: int, db: Session = Depends(get_db)) -> dict:
    batch = get_or_raise(db, InventoryBatch, batch_id, "inventory batch")
    return {"data": _batch_data(batch), "meta": _meta()}


@app.get("/api/v1/inventory/batches", tags=["Inventory"])
def list_batches(
    product_id: Optional[int] = Query(default=None),
    branch_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(InventoryBatch)
    if product_id is not None:
        query = query.filter(InventoryBatch.product_id == product_id)
    if branch_id is not None:
        query = query.filter(InventoryBatch.branch_id == branch_id)
    if status is not None:
        query = query.filter(InventoryBatch.status == status)
    batches, next_cursor = _paginate_by_id(query, InventoryBatch, limit, cursor)
    return {"data": [_batch_data(batch) for batch in batches], "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/inventory/batches/{batch_id}/adjust", tags=["Inventory"])
def adjust_batch(
    batch_id: int, payload: BatchAdjust, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    batch = stock.adjust_batch(db, batch_id, payload, actor.user_id)
    return {"data": _batch_data(batch), "meta": _meta()}


@app.post("/api/v1/inventory/batches/{batch_id}/transfer", tags=["Inventory"])
def transfer_batch(
    batch_id: int, payload: BatchTransfer, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    batch = stock.transfer_batch(db, batch_id, payload, actor.user_id)
    return {"data": _batch_data(batch), "meta": _meta()}


@app.post("/api/v1/inventory/batches/{batch_id}/scrap", tags=["Inventory"])
def scrap_batch(
    batch_id: int, payload: BatchScrap, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    batch = stock.scrap_batch(db, batch_id, payload.reason, actor.user_id)
    return {"data": _batch_data(batch), "meta": _meta()}


# --- purchases -------------------------------------------------------------


@app.post("/api/v1/purchases", tags=["Purchases"])
def create_purchase(
    payload: PurchaseCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    purchase = purchases.create_purchase(db, payload, actor)
    return {"data": _purchase_data(db, purchase), "meta": _meta()}


@app.get("/api/v1/purchases/{purchase_id}", tags=["Purchases"])
def get_purchase(purchase_id: int, db: Session = Depends(get_db)) -> dict:
    purchase = get_or_raise(db, Purchase, purchase_id, "purchase")
    return {"data": _purchase_data(db, purchase), "meta": _meta()}


@app.post("/api/v1/purchases/{purchase_id}/cancel", tags=["Purchases"])
def cancel_purchase(purchase_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)) -> dict:
    return {"data": purchases.cancel_purchase(db, purchase_id, actor), "meta": _meta()}


# --- returns ---------------------------------------------------------------


@app.post("/api/v1/sales-returns", tags=["Returns"])
def create_sales_return(
    payload: SalesReturnCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    ret = returns.create_sales_return(db, payload, actor)
    return {"data": _sales_return_data(db, ret), "meta": _meta()}


@app.get("/api/v1/sales-returns/{return_id}", tags=["Returns"])
def get_sales_return(return_id: int, db: Session = Depends(get_db)) -> dict:
    ret = get_or_raise(db, SalesReturn, return_id, "sales return")
    return {"data": _sales_return_data(db, ret), "meta": _meta()}


@app.post("/api/v1/sales-returns/{return_id}/approve", tags=["Returns"])
def approve_sales_return(return_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)) -> dict:
    ret = returns.approve_sales_return(db, return_id, actor)
    return {"data": _sales_return_data(db, ret), "meta": _meta()}


@app.post("/api/v1/sales-returns/{return_id}/cancel", tags=["Returns"])
def cancel_sales_return(return_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)) -> dict:
    ret = returns.cancel_sales_return(db, return_id, actor)
    return {"data": _sales_return_data(db, ret), "meta": _meta()}


@app.post("/api/v1/purchase-returns", tags=["Returns"])
def create_purchase_return(
    payload: PurchaseReturnCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    ret = returns.create_purchase_return(db, payload, actor)
    return {"data": _purchase_return_data(db, ret), "meta": _meta()}


@app.post("/api/v1/purchase-returns/{return_id}/approve", tags=["Returns"])
def approve_purchase_return(
    return_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    ret = returns.approve_purchase_return(db, return_id, actor)
    return {"data": _purchase_return_data(db, ret), "meta": _meta()}


@app.post("/api/v1/purchase-returns/{return_id}/cancel", tags=["Returns"])
def cancel_purchase_return(
    return_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    ret = returns.cancel_purchase_return(db, return_id, actor)
    return {"data": _purchase_return_data(db, ret), "meta": _meta()}


# --- payments and ledger ---------------------------------------------------


@app.post("/api/v1/payments", tags=["Payments"])
def create_payment(
    payload: PaymentCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    payment = payments.create_payment(db, payload, actor.user_id)
    return {"data": _payment_data(payment), "meta": _meta()}


@app.post("/api/v1/payments/advances", tags=["Payments"])
def create_advance(
    payload: AdvanceCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    payment = payments.create_advance(db, payload, actor.user_id)
    return {"data": _payment_data(payment), "meta": _meta()}


@app.post("/api/v1/payments/refunds", tags=["Payments"])
def process_refund(
    payload: RefundCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    entries = payments.process_refund(db, payload, actor.user_id)
    contact = db.get(Contact, payload.customer_id)
    return {
        "data": {
            "contact_id": contact.id,
            "ledger_balance": _num(contact.ledger_balance),
            "net_refund": _num(payload.refund_amount - payload.withdrawal_fee),
            "entries": [_entry_data(entry) for entry in entries],
        },
        "meta": _meta(),
    }

@app.post("/api/v1/payments/{payment_id}/confirm", tags=["Payments"])
def confirm_payment(payment_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)) -> dict:
    payment = payments.confirm_payment(db, payment_id, actor.user_id)
    return {"data": _payment_data(payment), "meta": _meta()}


@app.post("/api/v1/payments/{payment_id}/void", tags=["Payments"])
def void_payment(payment_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)) -> dict:
    payment = payments.void_payment(db, payment_id, actor.user_id)
    return {"data": _payment_data(payment), "meta": _meta()}


@app.get("/api/v1/ledger/contacts/{contact_id}", tags=["Ledger"])
def get_statement(
    contact_id: int,
    branch_id: Optional[int] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    entries = ledger.statement(db, contact_id, branch_id, start, end)
    contact = db.get(Contact, contact_id)
    return {
        "data": {
            "contact_id": contact.id,
            "name": contact.name,
            "ledger_balance": _num(contact.ledger_balance),
            "entries": [_entry_data(entry) for entry in entries],
        },
        "meta": _meta(),
    }


@app.post("/api/v1/ledger/adjustments", tags=["Ledger"])
def post_adjustment(
    payload: LedgerAdjustmentCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)
) -> dict:
    entry = payments.post_adjustment(db, payload, actor.user_id)
    return {"data": _entry_data(entry), "meta": _meta()}


@app.post("/api/v1/ledger/recalculate", tags=["Ledger"])
def recalculate_ledger(payload: LedgerRecalculate, db: Session = Depends(get_db)) -> dict:
    with unit_of_work(db):
        balance = ledger.recalculate(db, payload.contact_id, payload.branch_id, payload.from_date)
    return {"data": {"contact_id": payload.contact_id, "ledger_balance": _num(balance)}, "meta": _meta()}


@app.post("/api/v1/ledger/rebuild", tags=["Ledger"])
def rebuild_ledger(db: Session = Depends(get_db)) -> dict:
    with unit_of_work(db):
        balances = ledger.rebuild_all(db)
    data = [{"contact_id": contact_id, "ledger_balance": _num(balance)} for contact_id, balance in balances.items()]
    return {"data": data, "meta": _meta()}


@app.post("/api/v1/ledger/backfill-invoices", tags=["Ledger"])
def backfill_invoices(db: Session = Depends(get_db)) -> dict:
    with unit_of_work(db):
        order_ids = ledger.backfill_invoices(db)
    return {"data": {"sales_order_ids": order_ids, "posted": len(order_ids)}, "meta": _meta()}
