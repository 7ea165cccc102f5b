import json
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any
from urllib.parse import parse_qsl

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from payment_bridge.clients import FintirxClient, ShopifyClient
from payment_bridge.config import Settings
from payment_bridge.database import create_engine, create_session_factory, init_db
from payment_bridge.exceptions import BridgeError, UpstreamRejected, ValidationError
from payment_bridge.handlers import (
    HandlerResult,
    OrderIntakeHandler,
    PaymentReconciliationHandler,
    StatusQueryHandler,
)
from payment_bridge.log import configure_logging
from payment_bridge.messaging import close_rabbitmq, setup_rabbitmq
from payment_bridge.reference import ReferenceGenerator
from payment_bridge.schemas import HandledResponse, PaymentLinkResponse, PaymentResultEvent, ShopifyOrder
from payment_bridge.store import CorrelationStore, InMemoryCorrelationStore, SqlCorrelationStore
from payment_bridge.verification import build_gateway_verifier, build_storefront_verifier

logger = structlog.get_logger(__name__)

settings = Settings.from_env()
configure_logging(settings.log_level)


def configure_app(
    application: FastAPI,
    app_settings: Settings,
    store: CorrelationStore,
    gateway: FintirxClient,
    storefront: ShopifyClient,
) -> None:
    """Wire the process-wide collaborators onto ``application.state``."""
    application.state.settings = app_settings
    application.state.store = store
    application.state.gateway = gateway
    application.state.storefront = storefront
    application.state.references = ReferenceGenerator(prefix=app_settings.reference_prefix)
    application.state.storefront_verifier = build_storefront_verifier(app_settings)
    application.state.gateway_verifier = build_gateway_verifier(app_settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    if settings.store_backend == "sql":
        engine = create_engine(settings.database_url)
        await init_db(engine)
        app.state.engine = engine
        store = SqlCorrelationStore(
            create_session_factory(engine),
            claim_timeout=timedelta(seconds=max(settings.claim_timeout_seconds, 2 * settings.http_timeout_seconds)),
        )
    else:
        logger.warning("in_memory_store", detail="correlations are lost on restart")
        store = InMemoryCorrelationStore()

    configure_app(app, settings, store, FintirxClient(settings), ShopifyClient(settings))
    if not settings.fintirx_webhook_secret:
        logger.warning(
            "gateway_webhook_unverified",
            accepting=settings.allow_unverified_gateway_webhooks,
            detail="set FINTIRX_WEBHOOK_SECRET before production use",
        )
    await setup_rabbitmq(settings.rabbitmq_url)
    logger.info("payment_bridge_started", store_backend=settings.store_backend)

    yield

    await app.state.gateway.close()
    await app.state.storefront.close()
    await close_rabbitmq()
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()


app = FastAPI(title="Payment Bridge Service", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError):
    if isinstance(exc, UpstreamRejected):
        body = HandledResponse(status="rejected", detail=str(exc)).model_dump()
    else:
        body = {"detail": str(exc)}
    return JSONResponse(status_code=exc.status_code, content=body)


# --- Dependencies ---

def get_store(request: Request) -> CorrelationStore:
    return request.app.state.store


def get_intake_handler(request: Request) -> OrderIntakeHandler:
    state = request.app.state
    return OrderIntakeHandler(state.store, state.gateway, state.references, state.settings.default_remark)


def get_reconciliation_handler(request: Request) -> PaymentReconciliationHandler:
    state = request.app.state
    return PaymentReconciliationHandler(state.store, state.storefront, state.references)


def get_status_handler(request: Request) -> StatusQueryHandler:
    return StatusQueryHandler(request.app.state.store, request.app.state.gateway)


async def verified_storefront_body(request: Request) -> bytes:
    body = await request.body()
    request.app.state.storefront_verifier.verify(body, request.headers)
    return body


async def verified_gateway_body(request: Request) -> bytes:
    body = await request.body()
    request.app.state.gateway_verifier.verify(body, request.headers)
    return body


def _parse_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError("Invalid payload") from e


def _handled(result: HandlerResult) -> HandledResponse:
    return HandledResponse(
        status=result.outcome.value,
        detail=result.detail,
        order_id=result.order_id,
        correlation_ref=result.correlation_ref,
    )


# --- Routes ---

@app.post("/order-intake", response_model=HandledResponse)
@app.post("/shopify-order-webhook", response_model=HandledResponse, include_in_schema=False)
async def order_intake(
    body: bytes = Depends(verified_storefront_body),
    handler: OrderIntakeHandler = Depends(get_intake_handler),
):
    try:
        order = ShopifyOrder.model_validate(_parse_json(body))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid order payload: {e.error_count()} error(s)") from e
    return _handled(await handler.handle(order))


@app.get("/payment-link", response_model=PaymentLinkResponse)
@app.get("/get-payment-url", response_model=PaymentLinkResponse, include_in_schema=False)
async def payment_link(order_id: str = Query(...), store: CorrelationStore = Depends(get_store)):
    link = await store.take_payment_link(order_id)
    logger.info("payment_link_requested", order_id=order_id, delivered=link is not None)
    return PaymentLinkResponse(payment_link=link)


@app.post("/payment-result", response_model=HandledResponse)
@app.post("/payin-webhook", response_model=HandledResponse, include_in_schema=False)
async def payment_result(
    request: Request,
    body: bytes = Depends(verified_gateway_body),
    handler: PaymentReconciliationHandler = Depends(get_reconciliation_handler),
):
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        data = dict(parse_qsl(body.decode("utf-8", "replace")))
    else:
        data = _parse_json(body)
    try:
        event = PaymentResultEvent.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("Invalid payload") from e
    return _handled(await handler.handle(event))


@app.get("/order-status")
@app.get("/check-status", include_in_schema=False)
async def order_status(order_id: str = Query(...), handler: StatusQueryHandler = Depends(get_status_handler)):
    return await handler.query(order_id)


@app.get("/wallet-balance")
@app.get("/get-wallet-balance", include_in_schema=False)
async def wallet_balance(request: Request):
    return await request.app.state.gateway.check_balance()


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
