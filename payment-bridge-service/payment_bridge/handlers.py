"""
Order intake, payment reconciliation and status polling.

Handlers raise the exceptions in payment_bridge.exceptions for anything the
sender must not treat as handled; every other path returns a result whose
outcome is reported back with a 200.
"""

import enum
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from payment_bridge.clients import FintirxClient, ShopifyClient
from payment_bridge.exceptions import (
    DuplicateOrderError,
    NotFoundError,
    TransportError,
    UpstreamRejected,
    ValidationError,
)
from payment_bridge.messaging import build_event, publish_event
from payment_bridge.models import OrderStatus
from payment_bridge.reference import ReferenceGenerator
from payment_bridge.schemas import PaymentResultEvent, ShopifyOrder
from payment_bridge.store import CorrelationStore

logger = structlog.get_logger(__name__)

AWAITING_PAYMENT = "pending"


class IntakeOutcome(enum.Enum):
    LINK_CREATED = "link_created"
    NOT_PENDING = "not_pending"
    MISSING_PHONE = "missing_phone"
    DUPLICATE = "duplicate"
    GATEWAY_REJECTED = "gateway_rejected"


class ReconcileOutcome(enum.Enum):
    CAPTURED = "captured"
    ALREADY_FINALIZED = "already_finalized"
    PAYMENT_FAILED = "payment_failed"
    CAPTURE_REJECTED = "capture_rejected"


@dataclass(frozen=True)
class HandlerResult:
    outcome: enum.Enum
    order_id: Optional[str] = None
    correlation_ref: Optional[str] = None
    detail: Optional[str] = None


class OrderIntakeHandler:
    def __init__(
        self,
        store: CorrelationStore,
        gateway: FintirxClient,
        references: ReferenceGenerator,
        default_remark: str,
    ):
        self.store = store
        self.gateway = gateway
        self.references = references
        self.default_remark = default_remark

    async def _claim_ref(self, order: ShopifyOrder) -> Optional[str]:
        """
        Register the order and return the ref this delivery may request a
        link for, or None when another delivery owns (or finished) it.
        """
        correlation_ref = self.references.generate(order.id)
        try:
            await self.store.put(order.id, correlation_ref, total_amount=str(order.total_price))
            return correlation_ref
        except DuplicateOrderError:
            # A redelivery after a transport failure reuses the original ref.
            return await self.store.claim_link_request(order.id)

    async def handle(self, order: ShopifyOrder) -> HandlerResult:
        log = logger.bind(order_id=order.id)

        if order.financial_status != AWAITING_PAYMENT:
            log.info("order_intake_skipped", reason="not_pending", financial_status=order.financial_status)
            return HandlerResult(IntakeOutcome.NOT_PENDING, order.id, detail="Not a pending order")

        phone = order.contact_phone()
        if not phone:
            log.info("order_intake_skipped", reason="missing_phone")
            return HandlerResult(IntakeOutcome.MISSING_PHONE, order.id, detail="Missing mobile")

        correlation_ref = await self._claim_ref(order)
        if correlation_ref is None:
            record = await self.store.get_record(order.id)
            state = record.link_state.value if record else None
            log.info("order_intake_duplicate", link_state=state)
            return HandlerResult(IntakeOutcome.DUPLICATE, order.id, detail=f"Already handled ({state})")

        log = log.bind(correlation_ref=correlation_ref)
        try:
            payment_url = await self.gateway.create_order(
                customer_mobile=phone,
                amount=order.total_price,
                correlation_ref=correlation_ref,
                redirect_url=order.order_status_url,
                remark=order.note or self.default_remark,
            )
        except UpstreamRejected as e:
            await self.store.reject_link_request(order.id)
            log.warning("gateway_rejected_order", reason=str(e))
            await publish_event(
                "order.payment_link_rejected",
                build_event("PaymentLinkRejected", order.id, correlation_ref, reason=str(e)),
            )
            return HandlerResult(IntakeOutcome.GATEWAY_REJECTED, order.id, correlation_ref, detail=str(e))
        except TransportError:
            await self.store.release_link_request(order.id)
            log.error("gateway_create_order_failed")
            raise

        await self.store.set_payment_link(order.id, payment_url)
        log.info("payment_link_created")
        await publish_event(
            "order.payment_link_created",
            build_event("PaymentLinkCreated", order.id, correlation_ref, amount=str(order.total_price)),
        )
        return HandlerResult(IntakeOutcome.LINK_CREATED, order.id, correlation_ref, detail="Order processed")


class PaymentReconciliationHandler:
    def __init__(self, store: CorrelationStore, storefront: ShopifyClient, references: ReferenceGenerator):
        self.store = store
        self.storefront = storefront
        self.references = references

    async def _resolve(self, correlation_ref: str) -> str:
        try:
            order_id = await self.store.resolve(correlation_ref)
        except NotFoundError as e:
            logger.warning("payment_result_unknown_ref", correlation_ref=correlation_ref)
            raise ValidationError(f"unknown order reference {correlation_ref}") from e
        try:
            embedded = self.references.extract_order_id(correlation_ref)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if embedded != order_id:
            logger.error("payment_result_ref_mismatch", correlation_ref=correlation_ref, order_id=order_id)
            raise ValidationError(f"reference {correlation_ref} does not belong to order {order_id}")
        return order_id

    @staticmethod
    def _capture_message(event: PaymentResultEvent) -> str:
        message = f"UTR: {event.utr or 'n/a'}"
        if event.message:
            message = f"{message} - {event.message}"
        return message

    async def handle(self, event: PaymentResultEvent) -> HandlerResult:
        correlation_ref = event.order_id
        order_id = await self._resolve(correlation_ref)
        log = logger.bind(order_id=order_id, correlation_ref=correlation_ref)

        if not event.is_success():
            marked = await self.store.mark_failed(order_id)
            log.info("payment_not_successful", status=event.status, recorded=marked)
            if not marked:
                record = await self.store.get_record(order_id)
                if record and record.status != OrderStatus.FAILED:
                    return HandlerResult(
                        ReconcileOutcome.ALREADY_FINALIZED, order_id, correlation_ref, f"Order is {record.status.value}",
                    )
            else:
                await publish_event(
                    "order.payment_failed",
                    build_event("PaymentFailed", order_id, correlation_ref, status=event.status, message=event.message),
                )
            return HandlerResult(ReconcileOutcome.PAYMENT_FAILED, order_id, correlation_ref, "Payment was not successful")

        if not await self.store.begin_capture(order_id):
            record = await self.store.get_record(order_id)
            status = record.status.value if record else None
            log.info("capture_skipped", status=status)
            return HandlerResult(ReconcileOutcome.ALREADY_FINALIZED, order_id, correlation_ref, f"Order is {status}")

        record = await self.store.get_record(order_id)
        expected = record.total_amount_decimal if record else None
        if event.amount is not None and expected is not None and event.amount != expected:
            log.warning("payment_amount_differs", paid=str(event.amount), expected=record.total_amount)

        try:
            await self.storefront.capture_transaction(order_id, event.amount, self._capture_message(event))
        except UpstreamRejected as e:
            await self.store.finish_capture(order_id, captured=False)
            log.error("capture_rejected", reason=str(e))
            await publish_event(
                "order.capture_rejected",
                build_event("CaptureRejected", order_id, correlation_ref, reason=str(e), utr=event.utr),
            )
            return HandlerResult(ReconcileOutcome.CAPTURE_REJECTED, order_id, correlation_ref, str(e))
        except TransportError:
            await self.store.abort_capture(order_id)
            log.error("capture_failed")
            raise

        await self.store.finish_capture(order_id, captured=True)
        log.info("order_marked_paid", utr=event.utr)
        await publish_event(
            "order.captured",
            build_event(
                "OrderCaptured", order_id, correlation_ref,
                amount=str(event.amount) if event.amount is not None else None, utr=event.utr,
            ),
        )
        return HandlerResult(ReconcileOutcome.CAPTURED, order_id, correlation_ref, "Success")


class StatusQueryHandler:
    def __init__(self, store: CorrelationStore, gateway: FintirxClient):
        self.store = store
        self.gateway = gateway

    async def query(self, order_id: str) -> Any:
        correlation_ref = await self.store.get_ref(order_id)
        if correlation_ref is None:
            raise NotFoundError("Order not found or not processed yet")
        return await self.gateway.check_order_status(correlation_ref)
