from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

Quantity = Decimal
Money = Decimal


class ItemAssignmentIn(BaseModel):
    batch_id: int
    quantity: Quantity = Field(gt=0, decimal_places=3)


class SaleItemIn(BaseModel):
    product_id: int
    quantity: Quantity = Field(gt=0, decimal_places=3)
    unit_price: Money = Field(ge=0, decimal_places=2)
    item_assignments: Optional[list[ItemAssignmentIn]] = None


class SaleCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "customer_id": 1,
                "branch_id": 1,
                "order_type": "invoice",
                "payment_status": "unpaid",
                "items": [
                    {
                        "product_id": 3,
                        "quantity": "10",
                        "unit_price": "450.00",
                        "item_assignments": [{"batch_id": 7, "quantity": "25"}],
                    }
                ],
            }
        }
    }
    customer_id: Optional[int] = None
    branch_id: int
    items: list[SaleItemIn] = Field(min_length=1)
    payment_status: Literal["unpaid", "partial", "paid"] = "unpaid"
    order_type: Literal["invoice", "draft", "quotation"] = "invoice"
    valid_until: Optional[date] = None
    notes: Optional[str] = None


class SaleConvert(BaseModel):
    """Line picks to use when a draft or quotation becomes an invoice."""

    assignments: dict[int, list[ItemAssignmentIn]] = Field(default_factory=dict)


class MaterialAssign(BaseModel):
    """Raw material picks that replace the current ones of a manufactured line."""

    model_config = {"json_schema_extra": {"example": {"item_assignments": [{"batch_id": 7, "quantity": "25"}]}}}
    item_assignments: list[ItemAssignmentIn] = Field(min_length=1)


class ProductionStatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"status": "produced", "worker_name": "Ali"}}}
    status: Literal["na", "pending_approval", "queue", "rejected", "produced", "delivered"]
    worker_name: Optional[str] = None
    dispatcher_name: Optional[str] = None
    vehicle_plate: Optional[str] = None
    delivery_signature: Optional[str] = None
    reason: Optional[str] = None


class DeliveryCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"dispatcher_name": "Bilal", "vehicle_plate": "LEA-1234"}}}
    dispatcher_name: str = Field(min_length=1)
    vehicle_plate: Optional[str] = None
    delivery_signature: Optional[str] = None


class RejectionCreate(BaseModel):
    reason: str = Field(min_length=1)


class AllocationPreview(BaseModel):
    product_id: int
    branch_id: int
    quantity: Quantity = Field(gt=0, decimal_places=3)


class PurchaseItemIn(BaseModel):
    product_id: int
    quantity: Quantity = Field(gt=0, decimal_places=3)
    unit_cost: Money = Field(ge=0, decimal_places=2)
    batch_type_id: Optional[int] = None
    instance_code: Optional[str] = None


class PurchaseCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "supplier_id": 2,
                "branch_id": 1,
                "items": [{"product_id": 5, "quantity": "1200", "unit_cost": "310.00", "batch_type_id": 1}],
            }
        }
    }
    supplier_id: int
    branch_id: int
    items: list[PurchaseItemIn] = Field(min_length=1)
    payment_status: Literal["unpaid", "partial", "paid"] = "unpaid"
    notes: Optional[str] = None


class BatchCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"product_id": 5, "branch_id": 1, "batch_type_id": 1, "quantity": "1000"}
        }
    }
    product_id: int
    branch_id: int
    quantity: Quantity = Field(gt=0, decimal_places=3)
    batch_type_id: Optional[int] = None
    instance_code: Optional[str] = None

    @model_validator(mode="after")
    def _code_or_type(self):
        if not self.instance_code and self.batch_type_id is None:
            raise ValueError("either instance_code or batch_type_id is required")
        return self


class BatchAdjust(BaseModel):
    new_quantity: Quantity = Field(ge=0, decimal_places=3)
    reason: str = Field(min_length=1)


class BatchTransfer(BaseModel):
    to_branch_id: int
    notes: Optional[str] = None


class ReturnItemIn(BaseModel):
    item_id: int
    quantity: Quantity = Field(gt=0, decimal_places=3)


class SalesReturnCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"sales_order_id": 12, "reason": "damaged sheet", "items": [{"item_id": 30, "quantity": "2"}]}
        }
    }
    sales_order_id: int
    items: list[ReturnItemIn] = Field(min_length=1)
    reason: Optional[str] = None


class PurchaseReturnCreate(BaseModel):
    purchase_id: int
    items: list[ReturnItemIn] = Field(min_length=1)
    reason: Optional[str] = None


class PaymentCreate(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"contact_id": 1, "branch_id": 1, "amount": "5000.00", "method": "cash"}}
    }
    contact_id: int
    branch_id: Optional[int] = None
    amount: Money = Field(gt=0, decimal_places=2)
    method: Literal["cash", "transfer", "pos"] = "cash"
    reference: Optional[str] = None
    payment_date: Optional[datetime] = None


class AdvanceCreate(BaseModel):
    """Money a customer leaves with us ahead of any invoice."""

    model_config = {
        "json_schema_extra": {"example": {"customer_id": 1, "branch_id": 1, "amount": "20000.00", "method": "transfer"}}
    }
    customer_id: int
    branch_id: Optional[int] = None
    amount: Money = Field(gt=0, decimal_places=2)
    method: Literal["cash", "transfer", "pos"] = "cash"
    reference: Optional[str] = None
    payment_date: Optional[datetime] = None


class RefundCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"customer_id": 1, "refund_amount": "5000.00", "withdrawal_fee": "100.00", "method": "cash"}
        }
    }
    customer_id: int
    branch_id: Optional[int] = None
    refund_amount: Money = Field(gt=0, decimal_places=2)
    withdrawal_fee: Money = Field(default=Decimal("0"), ge=0, decimal_places=2)
    method: Literal["cash", "transfer", "pos"] = "cash"
    reference: Optional[str] = None


class LedgerAdjustmentCreate(BaseModel):
    contact_id: int
    branch_id: Optional[int] = None
    transaction_type: Literal["ADJUSTMENT", "OPENING_BALANCE"] = "ADJUSTMENT"
    debit_amount: Money = Field(default=Decimal("0"), ge=0, decimal_places=2)
    credit_amount: Money = Field(default=Decimal("0"), ge=0, decimal_places=2)
    transaction_date: Optional[datetime] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _one_side(self):
        if (self.debit_amount > 0) == (self.credit_amount > 0):
            raise ValueError("exactly one of debit_amount or credit_amount must be positive")
        return self


class LedgerRecalculate(BaseModel):
    contact_id: int
    branch_id: Optional[int] = None
    from_date: Optional[datetime] = None


class Actor(BaseModel):
    """Caller identity as asserted by the upstream auth layer."""

    user_id: Optional[str] = None
    permissions: frozenset[str] = frozenset()

    def can(self, permission: str) -> bool:
        return permission in self.permissions


class BatchScrap(BaseModel):
    reason: str = Field(min_length=1)
