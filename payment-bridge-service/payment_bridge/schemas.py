from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator


class Address(BaseModel):
    phone: Optional[str] = None


class ShopifyOrder(BaseModel):
    """The subset of Shopify's orders/create webhook the bridge reads."""

    id: str = Field(..., min_length=1, examples=["1001"])
    financial_status: Optional[str] = Field(None, examples=["pending"])
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    total_price: Decimal = Field(..., examples=["25.00"])
    order_status_url: Optional[str] = None
    note: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Union[int, str]) -> str:
        if isinstance(v, bool):
            raise ValueError("id must be a string or integer")
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("total_price", mode="before")
    @classmethod
    def float_as_text(cls, v):
        if isinstance(v, float):
            return str(v)
        return v

    def contact_phone(self) -> Optional[str]:
        for address in (self.billing_address, self.shipping_address):
            if address and address.phone and address.phone.strip():
                return address.phone.strip()
        return None


class PaymentResultEvent(BaseModel):
    order_id: str = Field(..., min_length=1, examples=["LIK1001-1760000000000"])
    status: str = Field(..., min_length=1, examples=["SUCCESS"])
    amount: Optional[Decimal] = None
    utr: Optional[str] = None
    message: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def blank_amount(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        if isinstance(v, float):
            return str(v)
        return v

    @field_validator("utr", "message", mode="before")
    @classmethod
    def stringify(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    def is_success(self) -> bool:
        return self.status.strip().upper() == "SUCCESS"


class PaymentLinkResponse(BaseModel):
    payment_link: Optional[str] = None


class HandledResponse(BaseModel):
    status: str
    detail: Optional[str] = None
    order_id: Optional[str] = None
    correlation_ref: Optional[str] = None
