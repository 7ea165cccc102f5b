import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    # Storefront (Shopify admin API + webhooks)
    shopify_access_token: str = ""
    shopify_store: str = ""
    shopify_api_version: str = "2024-01"
    shopify_webhook_secret: str = ""

    # Payment gateway (Fintirx)
    fintirx_user_token: str = ""
    fintirx_base_url: str = ""
    fintirx_webhook_secret: str = ""
    fintirx_signature_header: str = "X-Fintirx-Signature"
    allow_unverified_gateway_webhooks: bool = False

    reference_prefix: str = "LIK"
    default_remark: str = "Shopify order from likone.shop"
    http_timeout_seconds: float = 10.0
    claim_timeout_seconds: float = 60.0

    store_backend: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./payment_bridge.db"
    rabbitmq_url: Optional[str] = None

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"
    port: int = 3000

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            shopify_access_token=os.getenv("SHOPIFY_ACCESS_TOKEN", ""),
            shopify_store=os.getenv("SHOPIFY_STORE", ""),
            shopify_api_version=os.getenv("SHOPIFY_API_VERSION", "2024-01"),
            shopify_webhook_secret=os.getenv("SHOPIFY_WEBHOOK_SECRET", ""),
            fintirx_user_token=os.getenv("FINTIRX_USER_TOKEN", ""),
            fintirx_base_url=os.getenv("FINTIRX_BASE_URL", "").rstrip("/"),
            fintirx_webhook_secret=os.getenv("FINTIRX_WEBHOOK_SECRET", ""),
            fintirx_signature_header=os.getenv("FINTIRX_SIGNATURE_HEADER", "X-Fintirx-Signature"),
            allow_unverified_gateway_webhooks=_flag("ALLOW_UNVERIFIED_GATEWAY_WEBHOOKS"),
            reference_prefix=os.getenv("REFERENCE_PREFIX", "LIK"),
            default_remark=os.getenv("DEFAULT_REMARK", "Shopify order from likone.shop"),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "10")),
            claim_timeout_seconds=float(os.getenv("CLAIM_TIMEOUT_SECONDS", "60")),
            store_backend=os.getenv("STORE_BACKEND", "memory").lower(),
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./payment_bridge.db"),
            rabbitmq_url=os.getenv("RABBITMQ_URL") or None,
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "3000")),
        )
