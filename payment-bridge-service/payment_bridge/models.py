from sqlalchemy import Column, String, DateTime, Enum
from sqlalchemy.orm import declarative_base
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
import enum

Base = declarative_base()

class OrderStatus(enum.Enum):
    PENDING = "pending"
    CAPTURING = "capturing"  # capture call in flight, held by one delivery
    CAPTURED = "captured"
    FAILED = "failed"

class LinkState(enum.Enum):
    REQUESTING = "requesting"  # gateway create-order call in flight
    RETRYABLE = "retryable"
    READY = "ready"
    DELIVERED = "delivered"
    REJECTED = "rejected"

class PaymentCorrelation(Base):
    __tablename__ = "payment_correlations"

    order_id = Column(String, primary_key=True, index=True)
    correlation_ref = Column(String, unique=True, index=True, nullable=False)
    total_amount = Column(String, nullable=True)  # decimal kept as text
    payment_link = Column(String, nullable=True)
    link_state = Column(Enum(LinkState), default=LinkState.REQUESTING, nullable=False)
    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


@dataclass(frozen=True)
class OrderRecord:
    order_id: str
    correlation_ref: str
    total_amount: Optional[str] = None
    payment_link: Optional[str] = None
    link_state: LinkState = LinkState.REQUESTING
    status: OrderStatus = OrderStatus.PENDING

    @property
    def total_amount_decimal(self) -> Optional[Decimal]:
        return Decimal(self.total_amount) if self.total_amount else None

    @classmethod
    def from_row(cls, row: PaymentCorrelation) -> "OrderRecord":
        return cls(
            order_id=row.order_id,
            correlation_ref=row.correlation_ref,
            total_amount=row.total_amount,
            payment_link=row.payment_link,
            link_state=row.link_state,
            status=row.status,
        )
