import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

PRODUCTION = "production"
SANDBOX = "sandbox"

PRODUCTION_ENDPOINT = "https://api.authorize.net/xml/v1/request.api"
SANDBOX_ENDPOINT = "https://apitest.authorize.net/xml/v1/request.api"

PRODUCTION_ALIASES = {"production", "prod", "live", "live-mode"}
SANDBOX_ALIASES = {"sandbox", "test", "testing", "dev", "development", "stage", "staging"}


@dataclass(frozen=True)
class GatewayConfig:
    environment: str
    endpoint: str
    login_id: Optional[str]
    transaction_key: Optional[str]
    timeout: float
    duplicate_window: int

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    @property
    def has_credentials(self) -> bool:
        return bool(self.login_id and self.transaction_key)

    @property
    def masked_login_id(self) -> str:
        if not self.login_id:
            return "MISSING"
        return self.login_id[:4] + "****"


@dataclass(frozen=True)
class PlanSettings:
    min_installments: int
    max_installments: int
    min_installment_amount: Decimal
    interval_days: int
    start_offset_days: int


@dataclass(frozen=True)
class CrmConfig:
    base_url: str
    api_key: Optional[str]
    location_id: Optional[str]
    timeout: float
    base_tags: Tuple[str, ...]


def _first_defined(*candidates):
    for candidate in candidates:
        if candidate is not None and str(candidate).strip():
            return candidate.strip()
    return None


def normalize_environment(value):
    if not value:
        return None
    normalized = str(value).strip().lower()
    if normalized in PRODUCTION_ALIASES:
        return PRODUCTION
    if normalized in SANDBOX_ALIASES:
        return SANDBOX
    return None


def resolve_environment() -> str:
    return normalize_environment(os.getenv("AUTHORIZE_NET_ENVIRONMENT")) or SANDBOX


def get_gateway_config(environment: Optional[str] = None) -> GatewayConfig:
    environment = environment or resolve_environment()
    suffix = "PROD" if environment == PRODUCTION else "SANDBOX"
    return GatewayConfig(
        environment=environment,
        endpoint=PRODUCTION_ENDPOINT if environment == PRODUCTION else SANDBOX_ENDPOINT,
        login_id=_first_defined(
            os.getenv(f"AUTHORIZE_NET_LOGIN_ID_{suffix}"),
            os.getenv("AUTHORIZE_NET_LOGIN_ID"),
        ),
        transaction_key=_first_defined(
            os.getenv(f"AUTHORIZE_NET_TRANSACTION_KEY_{suffix}"),
            os.getenv("AUTHORIZE_NET_TRANSACTION_KEY"),
        ),
        timeout=float(os.getenv("AUTHORIZE_NET_TIMEOUT", "120")),
        duplicate_window=int(os.getenv("AUTHORIZE_NET_DUPLICATE_WINDOW", "120")),
    )


def get_plan_settings() -> PlanSettings:
    return PlanSettings(
        min_installments=int(os.getenv("PAYMENT_PLAN_MIN_INSTALLMENTS", "2")),
        max_installments=int(os.getenv("PAYMENT_PLAN_MAX_INSTALLMENTS", "12")),
        min_installment_amount=Decimal(os.getenv("PAYMENT_PLAN_MIN_INSTALLMENT_AMOUNT", "1.00")),
        interval_days=int(os.getenv("PAYMENT_PLAN_INTERVAL_DAYS", "14")),
        start_offset_days=int(os.getenv("PAYMENT_PLAN_START_OFFSET_DAYS", "14")),
    )


def get_crm_config() -> CrmConfig:
    tags = os.getenv("GHL_BASE_TAGS", "authorize.net")
    return CrmConfig(
        base_url=os.getenv("GHL_API_BASE_URL", "https://rest.gohighlevel.com/v1"),
        api_key=_first_defined(os.getenv("GHL_API_KEY")),
        location_id=_first_defined(os.getenv("GHL_LOCATION_ID")),
        timeout=float(os.getenv("GHL_TIMEOUT", "10")),
        base_tags=tuple(t.strip() for t in tags.split(",") if t.strip()),
    )


def get_webhook_signature_key() -> Optional[str]:
    return _first_defined(os.getenv("ANET_SIGNATURE_KEY"))
