# backend/zona_pedidos/billing/resolver.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from zona_pedidos.db.database import db
from zona_pedidos.errors import TenantNotFoundError
from zona_pedidos.billing.models import KNOWN_STATUSES, STATUS_ACTIVE, STATUS_INACTIVE
from zona_pedidos.billing.timeutils import date_to_utc, iso, to_aware_utc
from zona_pedidos.observability.events import log_event
from zona_pedidos.repositories import billing_repository as repo


def normalize_status(value) -> Optional[str]:
    """Conjunto cerrado; vacío → None, desconocido → INACTIVE."""
    s = str(value or "").strip().upper()
    if not s:
        return None
    return s if s in KNOWN_STATUSES else STATUS_INACTIVE


def normalize_plan(cycle) -> Optional[str]:
    p = str(cycle or "").strip().lower()
    if p in ("monthly", "month"):
        return "MONTHLY"
    if p in ("yearly", "year"):
        return "YEARLY"
    return None


@dataclass
class EffectiveBilling:
    tenant_id: str
    status: str
    plan: Optional[str]
    current_period_end: Optional[datetime]
    trial_ends_at: Optional[datetime] = None
    past_due_since: Optional[datetime] = None
    grace_days: Optional[int] = None
    cnpj: Optional[str] = None
    external_subscription_id: Optional[str] = None
    sources: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_lifetime(self) -> bool:
        # ACTIVE sin fin de periodo = concesión vitalicia
        return self.status == STATUS_ACTIVE and self.current_period_end is None

    @property
    def is_recurring(self) -> bool:
        return self.status == STATUS_ACTIVE and self.current_period_end is not None

    def to_json(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "tenantId": self.tenant_id,
            "tenantBilling": {
                "id": self.tenant_id,
                "subscription_status": self.status,
                "plan": self.plan,
                "trial_ends_at": iso(self.trial_ends_at),
                "current_period_end": iso(self.current_period_end),
                "past_due_since": iso(self.past_due_since),
                "grace_days": self.grace_days,
                "cnpj": self.cnpj,
                "external_subscription_id": self.external_subscription_id,
                "lifetime": self.is_lifetime,
            },
            "sources": self.sources,
        }


def _load_mirror(tenant_id: str, subscription_id: Optional[str]):
    # 1) la suscripción vinculada al tenant; 2) la fila más reciente del tenant
    mirror = repo.get_mirror(subscription_id) if subscription_id else None
    if mirror is None:
        mirror = repo.latest_mirror_for_tenant(tenant_id)
    return mirror


def resolve_billing(tenant_id: str) -> EffectiveBilling:
    """
    Vista efectiva {status, plan, current_period_end} de un tenant.
    Si el espejo trae status normalizado, manda sobre el tenant; el trial
    siempre sale del tenant. Fallo al leer el espejo = "sin espejo".
    """
    tenant = repo.get_tenant(tenant_id)
    if tenant is None:
        raise TenantNotFoundError()

    t_status = tenant.subscription_status
    t_plan = tenant.plan
    t_period_end = to_aware_utc(tenant.current_period_end)
    base = dict(
        tenant_id=str(tenant.id),
        trial_ends_at=to_aware_utc(tenant.trial_ends_at),
        past_due_since=to_aware_utc(tenant.past_due_since),
        grace_days=tenant.grace_days,
        cnpj=tenant.cnpj,
        external_subscription_id=tenant.external_subscription_id,
    )

    mirror = None
    try:
        mirror = _load_mirror(base["tenant_id"], tenant.external_subscription_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        log_event("billing_mirror_lookup_failed", tenant_id=base["tenant_id"], err=str(e))
        mirror = None

    m_status = m_plan = m_period_end = None
    if mirror is not None:
        m_status = normalize_status(mirror.billing_status) or normalize_status(mirror.status)
        m_plan = normalize_plan(mirror.cycle)
        m_period_end = to_aware_utc(mirror.current_period_end) or date_to_utc(mirror.next_due_date)

    if m_status:
        # plan / fin de periodo del espejo, campo a campo con fallback al tenant
        status, plan, period_end = m_status, m_plan or t_plan, m_period_end or t_period_end
    else:
        status = normalize_status(t_status) or STATUS_INACTIVE
        plan, period_end = t_plan, t_period_end

    sources = {
        "subscription_mirror": (
            {"status": m_status, "plan": m_plan, "current_period_end": iso(m_period_end)}
            if mirror is not None else None
        ),
        "tenants": {
            "status": t_status,
            "plan": t_plan,
            "current_period_end": iso(t_period_end),
        },
    }

    return EffectiveBilling(
        status=status,
        plan=plan,
        current_period_end=period_end,
        sources=sources,
        **base,
    )
