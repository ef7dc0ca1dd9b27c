# backend/zona_pedidos/billing/access.py
# Gate de acceso: predicado puro, sin I/O. Se reevalúa en cada entrada a
# una ruta protegida (trial y gracia dependen del reloj).
from datetime import datetime, timedelta
from typing import Optional

from zona_pedidos.billing.models import STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_TRIAL
from zona_pedidos.billing.timeutils import now_utc, to_aware_utc

DEFAULT_GRACE_DAYS = 3


def grace_days_or_default(grace_days, default: int = DEFAULT_GRACE_DAYS) -> int:
    # solo enteros >= 0; None / negativos / basura → default
    if isinstance(grace_days, bool):
        return default
    if isinstance(grace_days, int) and grace_days >= 0:
        return grace_days
    return default


def is_access_allowed(billing, now: Optional[datetime] = None,
                      default_grace_days: int = DEFAULT_GRACE_DAYS) -> bool:
    """
    `billing` es cualquier objeto con status / trial_ends_at / past_due_since /
    grace_days (EffectiveBilling del resolver).

      ACTIVE   → siempre (recurrente o vitalicio)
      TRIAL    → now <= trial_ends_at
      PAST_DUE → now <= past_due_since + grace_days
      resto    → no
    """
    now = to_aware_utc(now) or now_utc()
    status = (getattr(billing, "status", None) or "").upper()

    if status == STATUS_ACTIVE:
        return True

    if status == STATUS_TRIAL:
        ends = to_aware_utc(getattr(billing, "trial_ends_at", None))
        return bool(ends and now <= ends)

    if status == STATUS_PAST_DUE:
        since = to_aware_utc(getattr(billing, "past_due_since", None))
        if not since:
            return False
        grace = grace_days_or_default(getattr(billing, "grace_days", None), default_grace_days)
        return now <= since + timedelta(days=grace)

    return False
