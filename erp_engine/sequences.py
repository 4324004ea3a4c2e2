import re
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_engine import locks
from erp_engine.errors import NotFound, ValidationFailed
from erp_engine.logging_config import get_logger
from erp_engine.models import (
    BatchType,
    InventoryBatch,
    Product,
    Purchase,
    PurchaseReturn,
    SalesOrder,
    SalesReturn,
)

logger = get_logger(__name__)

# prefix -> column holding the numbers it allocates
SEQUENCE_COLUMNS = {
    "INV": SalesOrder.invoice_number,
    "PO": Purchase.purchase_number,
    "RET": SalesReturn.return_number,
    "PRET": PurchaseReturn.return_number,
}

SEQUENCE_WIDTH = 4
INSTANCE_CODE_WIDTH = 3


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _max_suffix(db: Session, column, stem: str) -> int:
    highest = 0
    for value in db.execute(select(column).where(column.startswith(stem, autoescape=True))).scalars():
        suffix = value[len(stem):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def next_number(db: Session, prefix: str, on_date: Optional[date] = None) -> str:
    """Allocate ``{PREFIX}-{YYYYMMDD}-{NNNN}`` for ``prefix`` on ``on_date``.

    The numbering resets every day. A named lock on prefix+day is held until
    the caller's transaction ends, so two transactions never compute the same
    number; if the caller rolls back, the number is free again.
    """
    if prefix not in SEQUENCE_COLUMNS:
        raise ValueError(f"unknown sequence prefix {prefix!r}")
    day = (on_date or _today()).strftime("%Y%m%d")
    stem = f"{prefix}-{day}-"
    locks.acquire(db, f"sequence:{prefix}:{day}")
    number = f"{stem}{_max_suffix(db, SEQUENCE_COLUMNS[prefix], stem) + 1:0{SEQUENCE_WIDTH}d}"
    logger.debug("allocated %s", number)
    return number


def sanitize_code_part(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "-", value)
    cleaned = re.sub(r"-+", "-", cleaned)
    return cleaned.strip("-")


def next_instance_code(db: Session, product: Product, branch_id: int, batch_type_id: int) -> str:
    """Allocate ``{SKU}-{BATCHTYPE}-{NNN}`` for a new inventory batch.

    The lock is scoped to product+branch+batch type. Codes are unique across
    branches, so the highest suffix is read over every batch with the same
    stem.
    """
    batch_type = db.get(BatchType, batch_type_id)
    if batch_type is None:
        raise NotFound("batch type", batch_type_id)
    if not batch_type.is_active:
        raise ValidationFailed(f"batch type {batch_type.name} is not active")
    stem = f"{sanitize_code_part(product.sku)}-{sanitize_code_part(batch_type.name)}-"
    locks.acquire(db, f"instance:{product.id}:{branch_id}:{batch_type_id}")
    code = f"{stem}{_max_suffix(db, InventoryBatch.instance_code, stem) + 1:0{INSTANCE_CODE_WIDTH}d}"
    logger.debug("allocated instance code %s", code)
    return code
