# backend/zona_pedidos/config.py
# Configuración de billing. Se arma UNA vez en create_app() y se pasa por
# parámetro a resolver / gate / mutadores / webhook. La lógica de negocio
# nunca lee os.environ directamente.
from dataclasses import dataclass, field
from typing import Optional, Tuple, Mapping
import os

from zona_pedidos.errors import ConfigurationError

ASAAS_PRODUCTION_URL = "https://api.asaas.com/v3"
ASAAS_SANDBOX_URL = "https://api-sandbox.asaas.com/v3"


def _as_int(v, default: int) -> int:
    try:
        return int(str(v).strip())
    except (TypeError, ValueError):
        return default


def _as_float(v) -> Optional[float]:
    if v is None or str(v).strip() == "":
        return None
    try:
        return float(str(v).strip().replace(",", "."))
    except ValueError:
        return None


def normalize_code(code) -> str:
    """Cupons: maiúsculas e sem espaços (igual ao front)."""
    return "".join(str(code or "").split()).upper()


@dataclass(frozen=True)
class BillingConfig:
    asaas_api_key: Optional[str] = None
    asaas_env: str = "sandbox"
    asaas_base_url_override: Optional[str] = None
    http_timeout: int = 15

    billing_type: str = "UNDEFINED"
    plan_value_monthly: Optional[float] = None
    plan_value_yearly: Optional[float] = None
    plan_description: str = "Assinatura"

    family_coupon: str = ""
    family_emails: Tuple[str, ...] = field(default_factory=tuple)

    trial_days: int = 7
    default_grace_days: int = 3
    invoice_poll_attempts: int = 3
    invoice_poll_interval: float = 0.45
    webhook_max_attempts: int = 5

    webhook_token: Optional[str] = None
    operator_token: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "BillingConfig":
        env = os.environ if env is None else env
        emails = tuple(
            e.strip().lower()
            for e in str(env.get("FAMILY_LIFETIME_EMAILS", "") or "").split(",")
            if e.strip()
        )
        return cls(
            asaas_api_key=(env.get("ASAAS_API_KEY") or None),
            asaas_env=(env.get("ASAAS_ENV") or "sandbox").strip().lower(),
            asaas_base_url_override=(env.get("ASAAS_BASE_URL") or None),
            http_timeout=_as_int(env.get("ASAAS_HTTP_TIMEOUT"), 15),
            billing_type=(env.get("ASAAS_BILLING_TYPE") or "UNDEFINED").strip().upper(),
            plan_value_monthly=_as_float(env.get("ASAAS_PLAN_VALUE_MONTHLY")),
            plan_value_yearly=_as_float(env.get("ASAAS_PLAN_VALUE_YEARLY")),
            plan_description=(env.get("ASAAS_PLAN_DESCRIPTION") or "Assinatura"),
            family_coupon=normalize_code(env.get("FAMILY_LIFETIME_COUPON")),
            family_emails=emails,
            trial_days=_as_int(env.get("TRIAL_DAYS"), 7),
            default_grace_days=_as_int(env.get("DEFAULT_GRACE_DAYS"), 3),
            invoice_poll_attempts=_as_int(env.get("INVOICE_POLL_ATTEMPTS"), 3),
            invoice_poll_interval=_as_int(env.get("INVOICE_POLL_INTERVAL_MS"), 450) / 1000.0,
            webhook_max_attempts=_as_int(env.get("WEBHOOK_MAX_ATTEMPTS"), 5),
            webhook_token=(env.get("ASAAS_WEBHOOK_TOKEN") or None),
            operator_token=(env.get("BILLING_OPERATOR_TOKEN") or None),
        )

    @property
    def asaas_base_url(self) -> str:
        if self.asaas_base_url_override:
            return self.asaas_base_url_override.rstrip("/")
        return ASAAS_PRODUCTION_URL if self.asaas_env == "production" else ASAAS_SANDBOX_URL

    def require(self, name: str):
        """Devuelve el valor o lanza ConfigurationError nombrando la clave (secretos sin default)."""
        attr, env_key = _REQUIRED_KEYS[name]
        value = getattr(self, attr)
        if value is None or value == "":
            raise ConfigurationError(env_key)
        return value

    def plan_value(self, cycle: str) -> float:
        attr = "plan_value_yearly" if cycle == "YEARLY" else "plan_value_monthly"
        env_key = "ASAAS_PLAN_VALUE_YEARLY" if cycle == "YEARLY" else "ASAAS_PLAN_VALUE_MONTHLY"
        value = getattr(self, attr)
        if value is None or value <= 0:
            raise ConfigurationError(env_key, message=f"{env_key} inválido/ausente no env")
        return value

    def coupon_allowed_for(self, email: Optional[str]) -> bool:
        # lista vacía = cupón abierto a cualquier e-mail
        if not self.family_emails:
            return True
        return (email or "").strip().lower() in self.family_emails


_REQUIRED_KEYS = {
    "asaas_api_key": ("asaas_api_key", "ASAAS_API_KEY"),
    "operator_token": ("operator_token", "BILLING_OPERATOR_TOKEN"),
}
