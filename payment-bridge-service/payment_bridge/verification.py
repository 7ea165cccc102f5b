"""
Webhook authenticity checks.

Verifiers look at the exact raw request bytes. Parsing first and
re-serialising would change whitespace and key order and break the MAC.
"""

import base64
import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Mapping

import structlog

from payment_bridge.config import Settings
from payment_bridge.exceptions import AuthenticityError

logger = structlog.get_logger(__name__)


class WebhookVerifier(ABC):
    sender: str

    @abstractmethod
    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        """Raise AuthenticityError unless the request came from ``sender``."""


class HmacVerifier(WebhookVerifier):
    """HMAC-SHA256 over the raw body, compared against a header in constant time."""

    def __init__(self, sender: str, secret: str, header: str, encoding: str = "base64"):
        if encoding not in ("base64", "hex"):
            raise ValueError(f"unsupported signature encoding {encoding!r}")
        self.sender = sender
        self.header = header
        self.encoding = encoding
        self._secret = secret.encode("utf-8")

    def sign(self, body: bytes) -> str:
        digest = hmac.new(self._secret, body, hashlib.sha256).digest()
        if self.encoding == "hex":
            return digest.hex()
        return base64.b64encode(digest).decode("ascii")

    def verify(self, body, headers):
        supplied = headers.get(self.header)
        if not supplied:
            logger.warning("webhook_signature_missing", sender=self.sender, header=self.header)
            raise AuthenticityError(f"missing {self.header} header")
        expected = self.sign(body)
        if self.encoding == "hex":
            supplied = supplied.strip().lower()
        if not hmac.compare_digest(expected.encode("ascii"), supplied.strip().encode("ascii", "replace")):
            logger.warning("webhook_signature_mismatch", sender=self.sender)
            raise AuthenticityError("webhook verification failed")


class RejectAllVerifier(WebhookVerifier):
    """Used when a sender has no secret configured."""

    def __init__(self, sender: str):
        self.sender = sender

    def verify(self, body, headers):
        logger.error("webhook_secret_not_configured", sender=self.sender)
        raise AuthenticityError(f"no webhook secret configured for {self.sender}")


class UnverifiedVerifier(WebhookVerifier):
    """
    Accepts everything. Only installed when ALLOW_UNVERIFIED_GATEWAY_WEBHOOKS
    is set: anyone who can reach the endpoint can then forge payment results.
    """

    def __init__(self, sender: str):
        self.sender = sender

    def verify(self, body, headers):
        logger.warning("webhook_accepted_without_verification", sender=self.sender)


def build_storefront_verifier(settings: Settings) -> WebhookVerifier:
    if not settings.shopify_webhook_secret:
        return RejectAllVerifier("shopify")
    return HmacVerifier("shopify", settings.shopify_webhook_secret, "X-Shopify-Hmac-Sha256", encoding="base64")


def build_gateway_verifier(settings: Settings) -> WebhookVerifier:
    if settings.fintirx_webhook_secret:
        return HmacVerifier(
            "fintirx", settings.fintirx_webhook_secret, settings.fintirx_signature_header, encoding="hex",
        )
    if settings.allow_unverified_gateway_webhooks:
        return UnverifiedVerifier("fintirx")
    return RejectAllVerifier("fintirx")
