# backend/zona_pedidos/billing/promocodes.py
# Cupones:
#   - cupón familia (vitalicio): viene de config, no consume promo_codes
#   - resto: tabla promo_codes + promo_redemptions (una por cupón/tenant)
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from zona_pedidos.config import BillingConfig, normalize_code
from zona_pedidos.db.database import db
from zona_pedidos.errors import BillingValidationError, CouponNotAllowedError
from zona_pedidos.billing.models import (
    PLAN_FAMILY, STATUS_ACTIVE, STATUS_TRIAL, PromoCode, PromoRedemption, Tenant,
)
from zona_pedidos.billing.timeutils import iso, now_utc, to_aware_utc
from zona_pedidos.observability.events import log_event

KIND_TRIAL = "TRIAL"
KIND_LIFETIME = "LIFETIME"


def is_family_coupon(code: str, config: BillingConfig) -> bool:
    return bool(config.family_coupon) and normalize_code(code) == config.family_coupon


def grant_family_lifetime(tenant: Tenant, email: Optional[str], config: BillingConfig) -> Dict[str, Any]:
    """ACTIVE + FAMILY sin fin de periodo. Respeta la allow-list de e-mails."""
    if not config.coupon_allowed_for(email):
        raise CouponNotAllowedError()

    tenant.subscription_status = STATUS_ACTIVE
    tenant.plan = PLAN_FAMILY
    tenant.trial_ends_at = None
    tenant.current_period_end = None
    tenant.past_due_since = None
    if email and not tenant.billing_email:
        tenant.billing_email = email

    log_event("promo_lifetime_granted", tenant_id=tenant.id, email=email)
    return {
        "ok": True,
        "type": KIND_LIFETIME,
        "tenantId": tenant.id,
        "subscription_status": STATUS_ACTIVE,
        "plan": PLAN_FAMILY,
        "trial_ends_at": None,
        "current_period_end": None,
    }


def _reject(code: str, message: str, promo_code: str):
    log_event("promo_rejected", code=promo_code, reason=code)
    raise BillingValidationError(message, code=code)


def redeem_promocode(tenant: Tenant, promo_code: str, *, user_id: Optional[str],
                     config: BillingConfig, now: Optional[datetime] = None,
                     commit: bool = True) -> Dict[str, Any]:
    """
    Redime un cupón de la tabla para el tenant.
    Unicidad (cupón, tenant) = constraint en BD; contador con UPDATE condicionado.
    commit=False deja todo en la transacción del llamador (create_subscription).
    """
    now = to_aware_utc(now) or now_utc()
    code = normalize_code(promo_code)
    if not code:
        _reject("EMPTY_PROMO_CODE", "Digite um cupom.", code)

    promo: Optional[PromoCode] = PromoCode.query.filter_by(code=code).first()
    if promo is None or not promo.active:
        _reject("INVALID_PROMO_CODE", "Cupom inválido.", code)

    starts_at = to_aware_utc(promo.starts_at)
    expires_at = to_aware_utc(promo.expires_at)
    if starts_at and now < starts_at:
        _reject("INVALID_PROMO_CODE", "Cupom ainda não está válido.", code)
    if expires_at and now > expires_at:
        _reject("PROMO_CODE_EXPIRED", "Cupom expirado.", code)
    if promo.max_uses is not None and (promo.uses_count or 0) >= promo.max_uses:
        _reject("PROMO_CODE_EXHAUSTED", "Cupom esgotado.", code)

    promo_id, kind = promo.id, (promo.kind or KIND_TRIAL).upper()
    promo_days, promo_plan = promo.trial_days, promo.plan

    try:
        db.session.add(PromoRedemption(promo_code_id=promo_id, tenant_id=tenant.id, user_id=user_id))
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        _reject("PROMO_CODE_ALREADY_USED", "Este cupom já foi utilizado por esta empresa.", code)

    res = db.session.execute(
        text("""
            UPDATE promo_codes
               SET uses_count = uses_count + 1
             WHERE id = :pid
               AND (max_uses IS NULL OR uses_count < max_uses)
        """),
        {"pid": promo_id},
    )
    if res.rowcount == 0:
        # otro request se llevó el último uso
        db.session.rollback()
        _reject("PROMO_CODE_EXHAUSTED", "Cupom esgotado.", code)

    if kind == KIND_LIFETIME:
        tenant.subscription_status = STATUS_ACTIVE
        tenant.plan = promo_plan or KIND_LIFETIME
        tenant.current_period_end = None
        tenant.trial_ends_at = None
        tenant.past_due_since = None
        out = {
            "ok": True,
            "type": KIND_LIFETIME,
            "tenantId": tenant.id,
            "subscription_status": STATUS_ACTIVE,
            "plan": tenant.plan,
            "trial_ends_at": None,
            "current_period_end": None,
        }
    else:
        days = promo_days if promo_days and promo_days > 0 else config.trial_days
        current_end = to_aware_utc(tenant.trial_ends_at)
        base = current_end if current_end and current_end > now else now
        new_end = base + timedelta(days=days)

        if tenant.subscription_status != STATUS_ACTIVE:
            tenant.subscription_status = STATUS_TRIAL
        if tenant.trial_started_at is None:
            tenant.trial_started_at = now
        tenant.trial_ends_at = new_end
        out = {
            "ok": True,
            "type": KIND_TRIAL,
            "tenantId": tenant.id,
            "trial_days": days,
            "trial_ends_at": iso(new_end),
            "subscription_status": tenant.subscription_status,
        }

    out["promocode"] = code
    if commit:
        db.session.commit()
    log_event("promo_redeemed", tenant_id=tenant.id, code=code, kind=kind)
    return out
