from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from payment_bridge.config import Settings
from payment_bridge.exceptions import TransportError, UpstreamRejected

logger = structlog.get_logger(__name__)


def _json_body(response: httpx.Response, upstream: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise TransportError(f"{upstream} returned a non-JSON response ({response.status_code})") from e


class FintirxClient:
    """
    Payment gateway API. All calls are form-encoded POSTs authenticated with
    the account's user token.
    """

    CREATE_ORDER_PATH = "/api/create-order"
    CHECK_STATUS_PATH = "/api/check-order-status"
    CHECK_BALANCE_PATH = "/api/check-balance"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._user_token = settings.fintirx_user_token
        self._client = client or httpx.AsyncClient(
            base_url=settings.fintirx_base_url,
            timeout=settings.http_timeout_seconds,
        )

    async def close(self):
        await self._client.aclose()

    async def _post(self, path: str, form: Dict[str, str]) -> httpx.Response:
        data = {"user_token": self._user_token, **form}
        try:
            response = await self._client.post(path, data=data)
        except httpx.HTTPError as e:
            logger.error("gateway_request_failed", path=path, error=str(e))
            raise TransportError(f"gateway request to {path} failed: {e}") from e
        if response.status_code >= 500:
            raise TransportError(f"gateway returned {response.status_code} for {path}")
        return response

    async def create_order(
        self,
        *,
        customer_mobile: str,
        amount: Decimal,
        correlation_ref: str,
        redirect_url: Optional[str],
        remark: str,
    ) -> str:
        """Returns the hosted payment URL for ``correlation_ref``."""
        response = await self._post(self.CREATE_ORDER_PATH, {
            "customer_mobile": customer_mobile,
            "amount": str(amount),
            "order_id": correlation_ref,
            "redirect_url": redirect_url or "",
            "remark1": remark,
        })
        payload = _json_body(response, "gateway")
        if not isinstance(payload, dict) or "status" not in payload:
            raise TransportError("gateway create-order response has no status")
        if payload["status"] is not True:
            raise UpstreamRejected(str(payload.get("message") or "gateway declined the order"))
        result = payload.get("result")
        payment_url = result.get("payment_url") if isinstance(result, dict) else None
        if not payment_url:
            raise TransportError("gateway create-order response has no payment_url")
        return payment_url

    async def check_order_status(self, correlation_ref: str) -> Any:
        response = await self._post(self.CHECK_STATUS_PATH, {"order_id": correlation_ref})
        return _json_body(response, "gateway")

    async def check_balance(self) -> Any:
        response = await self._post(self.CHECK_BALANCE_PATH, {})
        return _json_body(response, "gateway")


class ShopifyClient:
    """Storefront admin API, authenticated with X-Shopify-Access-Token."""

    GATEWAY_NAME = "Fintirx"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._api_version = settings.shopify_api_version
        self._client = client or httpx.AsyncClient(
            base_url=f"https://{settings.shopify_store}",
            timeout=settings.http_timeout_seconds,
            headers={"X-Shopify-Access-Token": settings.shopify_access_token},
        )

    async def close(self):
        await self._client.aclose()

    async def capture_transaction(self, order_id: str, amount: Optional[Decimal], message: str) -> Dict[str, Any]:
        transaction: Dict[str, Any] = {
            "kind": "capture",
            "status": "success",
            "gateway": self.GATEWAY_NAME,
            "source": "external",
            "message": message,
        }
        if amount is not None:
            transaction["amount"] = str(amount)

        path = f"/admin/api/{self._api_version}/orders/{order_id}/transactions.json"
        try:
            response = await self._client.post(path, json={"transaction": transaction})
        except httpx.HTTPError as e:
            logger.error("storefront_request_failed", order_id=order_id, error=str(e))
            raise TransportError(f"storefront capture for order {order_id} failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransportError(f"storefront returned {response.status_code} for order {order_id}")
        if response.status_code >= 400:
            try:
                body = response.json()
                errors = body.get("errors", body) if isinstance(body, dict) else body
            except ValueError:
                errors = response.text
            raise UpstreamRejected(f"storefront declined capture ({response.status_code}): {errors}")
        payload = _json_body(response, "storefront")
        if not isinstance(payload, dict) or "transaction" not in payload:
            raise TransportError("storefront capture response has no transaction")
        return payload["transaction"]
