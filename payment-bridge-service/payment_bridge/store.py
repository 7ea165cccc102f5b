"""
Correlation store: order id <-> gateway ref, payment link, order status.

Two state machines live on each record:

    link:   requesting -> ready -> delivered
            requesting -> retryable -> requesting   (transport failure, redelivery)
            requesting -> rejected                  (gateway declined)
            requesting -> requesting                (stale claim taken over, SQL store only)

    status: pending -> capturing -> captured
            capturing -> pending                    (capture transport failure)
            capturing -> failed                     (storefront declined)
            pending -> failed                       (non-success payment result)
            capturing -> capturing                  (stale claim taken over, SQL store only)

Every transition is a compare-and-set on the current state, so concurrent
deliveries for one order serialise and exactly one of them wins. The lock
(or the conditional UPDATE) only guards the state change, never a network
call.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_bridge.exceptions import DuplicateOrderError, NotFoundError
from payment_bridge.models import LinkState, OrderRecord, OrderStatus, PaymentCorrelation


class CorrelationStore(ABC):

    @abstractmethod
    async def put(self, order_id: str, correlation_ref: str, total_amount: Optional[str] = None) -> OrderRecord:
        """Create the mapping in link state ``requesting``. Raises DuplicateOrderError if the order is known."""

    @abstractmethod
    async def resolve(self, correlation_ref: str) -> str:
        """Return the order id for a ref. Raises NotFoundError for unknown refs."""

    @abstractmethod
    async def get_record(self, order_id: str) -> Optional[OrderRecord]:
        ...

    async def get_ref(self, order_id: str) -> Optional[str]:
        record = await self.get_record(order_id)
        return record.correlation_ref if record else None

    @abstractmethod
    async def set_payment_link(self, order_id: str, link: str) -> bool:
        """requesting -> ready, storing the link."""

    @abstractmethod
    async def take_payment_link(self, order_id: str) -> Optional[str]:
        """ready -> delivered. Returns the link to exactly one caller."""

    @abstractmethod
    async def claim_link_request(self, order_id: str) -> Optional[str]:
        """retryable -> requesting. Returns the existing ref if this caller won the claim."""

    @abstractmethod
    async def release_link_request(self, order_id: str) -> bool:
        """requesting -> retryable."""

    @abstractmethod
    async def reject_link_request(self, order_id: str) -> bool:
        """requesting -> rejected."""

    @abstractmethod
    async def begin_capture(self, order_id: str) -> bool:
        """pending -> capturing. False means another delivery already owns or finished the capture."""

    @abstractmethod
    async def finish_capture(self, order_id: str, captured: bool) -> bool:
        """capturing -> captured (or failed when the storefront declined)."""

    @abstractmethod
    async def abort_capture(self, order_id: str) -> bool:
        """capturing -> pending, so a redelivered result can try again."""

    @abstractmethod
    async def mark_failed(self, order_id: str) -> bool:
        """pending -> failed."""


class InMemoryCorrelationStore(CorrelationStore):
    """
    Process-local store. Lost on restart; use SqlCorrelationStore for
    anything that must survive one.
    """

    def __init__(self):
        self._records: Dict[str, OrderRecord] = {}
        self._refs: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def put(self, order_id, correlation_ref, total_amount=None):
        async with self._locks[order_id]:
            if order_id in self._records:
                raise DuplicateOrderError(f"order {order_id} already has a correlation ref")
            if correlation_ref in self._refs:
                raise DuplicateOrderError(f"ref {correlation_ref} is already in use")
            record = OrderRecord(order_id=order_id, correlation_ref=correlation_ref, total_amount=total_amount)
            self._records[order_id] = record
            self._refs[correlation_ref] = order_id
            return record

    async def resolve(self, correlation_ref):
        order_id = self._refs.get(correlation_ref)
        if order_id is None:
            raise NotFoundError(f"unknown correlation ref {correlation_ref}")
        return order_id

    async def get_record(self, order_id):
        return self._records.get(order_id)

    async def _transition(self, order_id: str, field: str, expected, new, **changes) -> Optional[OrderRecord]:
        if order_id not in self._records:
            # unknown ids never get a lock
            return None
        async with self._locks[order_id]:
            record = self._records.get(order_id)
            if record is None or getattr(record, field) != expected:
                return None
            updated = replace(record, **{field: new}, **changes)
            self._records[order_id] = updated
            return record

    async def set_payment_link(self, order_id, link):
        previous = await self._transition(order_id, "link_state", LinkState.REQUESTING, LinkState.READY, payment_link=link)
        return previous is not None

    async def take_payment_link(self, order_id):
        previous = await self._transition(order_id, "link_state", LinkState.READY, LinkState.DELIVERED, payment_link=None)
        return previous.payment_link if previous else None

    async def claim_link_request(self, order_id):
        previous = await self._transition(order_id, "link_state", LinkState.RETRYABLE, LinkState.REQUESTING)
        return previous.correlation_ref if previous else None

    async def release_link_request(self, order_id):
        return await self._transition(order_id, "link_state", LinkState.REQUESTING, LinkState.RETRYABLE) is not None

    async def reject_link_request(self, order_id):
        return await self._transition(order_id, "link_state", LinkState.REQUESTING, LinkState.REJECTED) is not None

    async def begin_capture(self, order_id):
        return await self._transition(order_id, "status", OrderStatus.PENDING, OrderStatus.CAPTURING) is not None

    async def finish_capture(self, order_id, captured):
        final = OrderStatus.CAPTURED if captured else OrderStatus.FAILED
        return await self._transition(order_id, "status", OrderStatus.CAPTURING, final) is not None

    async def abort_capture(self, order_id):
        return await self._transition(order_id, "status", OrderStatus.CAPTURING, OrderStatus.PENDING) is not None

    async def mark_failed(self, order_id):
        return await self._transition(order_id, "status", OrderStatus.PENDING, OrderStatus.FAILED) is not None


class SqlCorrelationStore(CorrelationStore):
    """
    SQLAlchemy-backed store. Each transition is a single conditional UPDATE,
    so the exclusivity guarantees hold across processes and restarts.

    ``requesting`` and ``capturing`` are leases: a row left in either state
    for longer than ``claim_timeout`` (its holder died mid-call) can be
    claimed again by the next delivery.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        claim_timeout: timedelta = timedelta(minutes=1),
    ):
        self._session = session_factory
        self.claim_timeout = claim_timeout

    async def put(self, order_id, correlation_ref, total_amount=None):
        row = PaymentCorrelation(
            order_id=order_id,
            correlation_ref=correlation_ref,
            total_amount=total_amount,
            link_state=LinkState.REQUESTING,
            status=OrderStatus.PENDING,
        )
        async with self._session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateOrderError(f"order {order_id} already has a correlation ref") from e
            return OrderRecord.from_row(row)

    async def resolve(self, correlation_ref):
        async with self._session() as session:
            result = await session.execute(
                select(PaymentCorrelation.order_id).where(PaymentCorrelation.correlation_ref == correlation_ref)
            )
            order_id = result.scalar_one_or_none()
        if order_id is None:
            raise NotFoundError(f"unknown correlation ref {correlation_ref}")
        return order_id

    async def get_record(self, order_id):
        async with self._session() as session:
            row = await session.get(PaymentCorrelation, order_id)
            return OrderRecord.from_row(row) if row else None

    def _expired(self, column, held):
        cutoff = datetime.utcnow() - self.claim_timeout
        return and_(column == held, PaymentCorrelation.updated_at < cutoff)

    async def _transition(self, order_id: str, condition, **values) -> bool:
        values.setdefault("updated_at", datetime.utcnow())
        async with self._session() as session:
            result = await session.execute(
                update(PaymentCorrelation)
                .where(PaymentCorrelation.order_id == order_id, condition)
                .values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    async def set_payment_link(self, order_id, link):
        return await self._transition(
            order_id, PaymentCorrelation.link_state == LinkState.REQUESTING,
            link_state=LinkState.READY, payment_link=link,
        )

    async def take_payment_link(self, order_id):
        async with self._session() as session:
            row = await session.get(PaymentCorrelation, order_id)
            if row is None or row.link_state != LinkState.READY:
                return None
            link = row.payment_link
            result = await session.execute(
                update(PaymentCorrelation)
                .where(
                    PaymentCorrelation.order_id == order_id,
                    PaymentCorrelation.link_state == LinkState.READY,
                )
                .values(link_state=LinkState.DELIVERED, payment_link=None, updated_at=datetime.utcnow())
            )
            await session.commit()
            return link if result.rowcount == 1 else None

    async def claim_link_request(self, order_id):
        link_state = PaymentCorrelation.link_state
        claimed = await self._transition(
            order_id,
            or_(link_state == LinkState.RETRYABLE, self._expired(link_state, LinkState.REQUESTING)),
            link_state=LinkState.REQUESTING,
        )
        if not claimed:
            return None
        return await self.get_ref(order_id)

    async def release_link_request(self, order_id):
        return await self._transition(
            order_id, PaymentCorrelation.link_state == LinkState.REQUESTING, link_state=LinkState.RETRYABLE,
        )

    async def reject_link_request(self, order_id):
        return await self._transition(
            order_id, PaymentCorrelation.link_state == LinkState.REQUESTING, link_state=LinkState.REJECTED,
        )

    async def begin_capture(self, order_id):
        status = PaymentCorrelation.status
        return await self._transition(
            order_id,
            or_(status == OrderStatus.PENDING, self._expired(status, OrderStatus.CAPTURING)),
            status=OrderStatus.CAPTURING,
        )

    async def finish_capture(self, order_id, captured):
        final = OrderStatus.CAPTURED if captured else OrderStatus.FAILED
        return await self._transition(order_id, PaymentCorrelation.status == OrderStatus.CAPTURING, status=final)

    async def abort_capture(self, order_id):
        return await self._transition(
            order_id, PaymentCorrelation.status == OrderStatus.CAPTURING, status=OrderStatus.PENDING,
        )

    async def mark_failed(self, order_id):
        return await self._transition(
            order_id, PaymentCorrelation.status == OrderStatus.PENDING, status=OrderStatus.FAILED,
        )
