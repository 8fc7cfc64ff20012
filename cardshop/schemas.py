"""Request bodies and the uniform action result."""
from __future__ import annotations
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field, model_validator

SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


def to_cents(amount: Optional[Decimal]) -> Optional[int]:
    if amount is None:
        return None
    return int((amount * 100).to_integral_value())


class ActionResult(BaseModel):
    success: bool
    message: str = ""
    data: Optional[Any] = None


def ok(message: str = "", data: Any = None) -> dict:
    return ActionResult(success=True, message=message, data=data).model_dump()


# ----------------------------
# Catalog
# ----------------------------
class CategoryIn(BaseModel):
    slug: str = Field(pattern=SLUG_PATTERN, max_length=100)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    sort_order: int = 0


class ProductIn(BaseModel):
    slug: str = Field(pattern=SLUG_PATTERN, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    price: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    original_price: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=10, decimal_places=2
    )
    category_id: Optional[str] = None
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0
    min_quantity: int = Field(default=1, ge=1)
    max_quantity: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def _quantity_range(self):
        if self.max_quantity < self.min_quantity:
            raise ValueError("max_quantity must not be below min_quantity")
        return self


class ProductUpdate(BaseModel):
    slug: Optional[str] = Field(default=None, pattern=SLUG_PATTERN,
                                max_length=100)
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, gt=0, max_digits=10,
                                     decimal_places=2)
    original_price: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=10, decimal_places=2
    )
    category_id: Optional[str] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    sort_order: Optional[int] = None
    min_quantity: Optional[int] = Field(default=None, ge=1)
    max_quantity: Optional[int] = Field(default=None, ge=1)


# ----------------------------
# Storefront
# ----------------------------
class CheckoutIn(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)
    email: str
    payment_method: str = "epay"


class OrderLookupIn(BaseModel):
    order_no: str
    email: str


class CustomerOrderIn(BaseModel):
    email: str


class RefundRequestIn(BaseModel):
    email: str
    reason: Optional[str] = Field(default=None, max_length=500)


# ----------------------------
# Admin
# ----------------------------
class RejectRefundIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ConfirmRefundIn(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class OrderIdsIn(BaseModel):
    ids: List[str] = Field(min_length=1)


class CardImportIn(BaseModel):
    product_id: str
    cards: str
    dedupe: bool = True


class CardIdsIn(BaseModel):
    ids: List[int] = Field(min_length=1)
