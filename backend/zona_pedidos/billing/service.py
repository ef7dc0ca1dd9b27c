# backend/zona_pedidos/billing/service.py
# Mutadores de billing: start-trial, create-subscription, change-plan,
# cancel, sync (barrido de reconciliación) y apply-promocode; más el
# resumen financiero del tenant y el listado de suscripciones del gateway.
# Todos reciben config + cliente del gateway por parámetro.
import math
import re
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from zona_pedidos.config import BillingConfig, normalize_code
from zona_pedidos.db.database import db
from zona_pedidos.errors import BillingValidationError, TenantNotFoundError, UpstreamError
from zona_pedidos.billing.models import (
    CYCLES, STATUS_ACTIVE, STATUS_CANCELED, STATUS_PENDING, STATUS_TRIAL, Tenant,
)
from zona_pedidos.billing.promocodes import (
    KIND_LIFETIME, grant_family_lifetime, is_family_coupon, redeem_promocode,
)
from zona_pedidos.billing.schemas import GatewaySubscription
from zona_pedidos.billing.timeutils import iso, now_utc, to_aware_utc
from zona_pedidos.observability.events import log_event
from zona_pedidos.observability.metrics import (
    CANCEL_UPSTREAM_ERR, SUBS_CREATED, SYNC_ERR, SYNC_UPD,
)
from zona_pedidos.repositories import billing_repository as repo


# =========================
# Helpers
# =========================
def _get_tenant(tenant_id: str) -> Tenant:
    tenant = repo.get_tenant(tenant_id)
    if tenant is None:
        raise TenantNotFoundError()
    return tenant


def normalize_tax_id(value) -> Optional[str]:
    """CPF (11) o CNPJ (14) solo dígitos; cualquier otra cosa → None."""
    digits = re.sub(r"\D", "", str(value or ""))
    return digits if len(digits) in (11, 14) else None


def normalize_cycle(value, default: Optional[str] = "MONTHLY") -> str:
    cycle = str(value or "").strip().upper() or default
    if cycle not in CYCLES:
        raise BillingValidationError("Ciclo inválido. Use MONTHLY ou YEARLY.", code="INVALID_CYCLE")
    return cycle


# =========================
# Start trial
# =========================
def start_trial(tenant_id: str, config: BillingConfig, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Trial de un solo uso. Segunda llamada = started:false sin tocar nada."""
    now = to_aware_utc(now) or now_utc()
    tenant = _get_tenant(tenant_id)

    if (tenant.subscription_status or "").upper() == STATUS_ACTIVE or tenant.current_period_end:
        return {"ok": True, "tenantId": tenant.id, "started": False, "reason": "already_active"}

    if tenant.trial_started_at or tenant.trial_ends_at:
        return {
            "ok": True,
            "tenantId": tenant.id,
            "started": False,
            "reason": "trial_already_used",
            "trial_started_at": iso(tenant.trial_started_at),
            "trial_ends_at": iso(tenant.trial_ends_at),
        }

    ends = now + timedelta(days=config.trial_days)
    tenant.subscription_status = STATUS_TRIAL
    tenant.trial_started_at = now
    tenant.trial_ends_at = ends
    db.session.commit()

    log_event("trial_started", tenant_id=tenant_id, trial_ends_at=ends)
    return {
        "ok": True,
        "tenantId": tenant.id,
        "started": True,
        "tenant": {
            "id": tenant.id,
            "subscription_status": STATUS_TRIAL,
            "trial_started_at": iso(now),
            "trial_ends_at": iso(ends),
        },
    }


# =========================
# Create subscription
# =========================
def _ensure_gateway_customer(tenant: Tenant, gateway, *, email: str, tax_id: str) -> str:
    customer_id = (tenant.external_customer_id or "").strip() or None
    if not customer_id:
        customer = gateway.create_customer(
            name=tenant.name or "Cliente",
            email=email,
            cpf_cnpj=tax_id,
            phone=tenant.phone,
            external_reference=f"tenant:{tenant.id}",
        )
        customer_id = customer.id
        tenant.external_customer_id = customer_id
        db.session.commit()
        log_event("asaas_customer_created", tenant_id=tenant.id, customer_id=customer_id)
    return customer_id


def _ensure_customer_tax_id(tenant: Tenant, gateway, customer_id: str, *, email: str, tax_id: str):
    """GET → (PUT) → GET: el customer del gateway tiene que tener CPF/CNPJ."""
    try:
        if normalize_tax_id(gateway.get_customer(customer_id).cpf_cnpj):
            return
        gateway.update_customer(
            customer_id,
            cpf_cnpj=tax_id,
            name=tenant.name or "Cliente",
            email=email,
            mobilePhone=tenant.phone or None,
        )
        if normalize_tax_id(gateway.get_customer(customer_id).cpf_cnpj):
            return
        reason = "still_missing_after_update"
    except UpstreamError as e:
        reason = e.message

    log_event("asaas_customer_tax_id_missing", tenant_id=tenant.id, customer_id=customer_id, reason=reason)
    raise BillingValidationError(
        "Seu cadastro no Asaas está sem CPF/CNPJ. Atualize em Configurações e tente novamente.",
        code="MISSING_TAX_ID_ON_GATEWAY",
    )


def _poll_first_payment(gateway, subscription_id: str, config: BillingConfig) -> Optional[Dict[str, Any]]:
    """El primer cobro puede tardar unos ms en aparecer: pocos intentos con sleep corto."""
    payment = None
    for attempt in range(max(1, config.invoice_poll_attempts)):
        try:
            found = gateway.list_payments(subscription_id, limit=1)
        except UpstreamError as e:
            log_event("asaas_payment_poll_failed", subscription_id=subscription_id, err=e.message)
            break
        if found:
            payment = found[0]
            if payment.invoice_url:
                break
        if attempt < config.invoice_poll_attempts - 1:
            time.sleep(config.invoice_poll_interval)

    if payment is None:
        return None
    return {"id": payment.id, "status": payment.status, "invoiceUrl": payment.invoice_url}


def create_subscription(tenant_id: str, *, user_id: str, email: Optional[str], cycle,
                        promocode: Optional[str], gateway, config: BillingConfig,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
    now = to_aware_utc(now) or now_utc()
    cycle = normalize_cycle(cycle)
    code = normalize_code(promocode)
    email = (email or "").strip().lower()

    if not email:
        raise BillingValidationError("Usuário sem email", code="MISSING_EMAIL")

    tenant = _get_tenant(tenant_id)

    tax_id = normalize_tax_id(tenant.cnpj)
    if not tax_id:
        raise BillingValidationError(
            "Para assinar, preencha o CPF/CNPJ em Configurações antes de continuar.",
            code="MISSING_TAX_ID",
        )

    # cupón familia: concesión vitalicia, no toca el gateway
    if code and is_family_coupon(code, config):
        out = grant_family_lifetime(tenant, email, config)
        tenant.billing_email = email
        db.session.commit()
        return {**out, "mode": KIND_LIFETIME}

    if (tenant.subscription_status or "").upper() == STATUS_ACTIVE and tenant.external_subscription_id:
        raise BillingValidationError("Já existe uma assinatura ativa.", code="ALREADY_ACTIVE")

    value = config.plan_value(cycle)
    config.require("asaas_api_key")

    if (tenant.billing_email or "").strip().lower() != email:
        tenant.billing_email = email
        db.session.commit()

    customer_id = _ensure_gateway_customer(tenant, gateway, email=email, tax_id=tax_id)
    _ensure_customer_tax_id(tenant, gateway, customer_id, email=email, tax_id=tax_id)

    # cupón de tabla: queda en la transacción hasta que el gateway confirme
    trial_ends_at = None
    if code:
        redeemed = redeem_promocode(tenant, code, user_id=user_id, config=config, now=now, commit=False)
        if redeemed["type"] == KIND_LIFETIME:
            db.session.commit()
            return {**redeemed, "mode": KIND_LIFETIME}
        trial_ends_at = to_aware_utc(tenant.trial_ends_at)

    trial_days = 0
    if trial_ends_at and trial_ends_at > now:
        trial_days = max(0, math.ceil((trial_ends_at - now).total_seconds() / 86400))
    # sin trial cobra hoy; con trial, la primera cuota vence al final del trial
    next_due = (now + timedelta(days=trial_days)).date()

    try:
        subscription = gateway.create_subscription(
            customer=customer_id,
            billing_type=config.billing_type,
            cycle=cycle,
            value=value,
            next_due_date=next_due.isoformat(),
            description=config.plan_description,
            external_reference=f"tenant:{tenant.id}",
        )
    except UpstreamError:
        # el cupón no se consume si el gateway no confirmó
        db.session.rollback()
        raise

    tenant.plan = cycle
    tenant.external_subscription_id = subscription.id
    if trial_days > 0:
        tenant.subscription_status = STATUS_TRIAL
        tenant.trial_ends_at = trial_ends_at

    repo.upsert_mirror(
        subscription.id,
        external_customer_id=customer_id,
        tenant_id=tenant.id,
        email=email,
        cycle=cycle,
        status=subscription.status,
        next_due_date=subscription.next_due_date or next_due,
        billing_status=STATUS_TRIAL if trial_days > 0 else STATUS_PENDING,
    )
    db.session.commit()
    SUBS_CREATED.inc()
    log_event("asaas_subscription_created", tenant_id=tenant.id, subscription_id=subscription.id,
              cycle=cycle, trial_days=trial_days)

    payment = _poll_first_payment(gateway, subscription.id, config)
    if payment:
        repo.upsert_mirror(
            subscription.id,
            tenant_id=tenant.id,
            last_payment_id=payment["id"],
            last_invoice_url=payment["invoiceUrl"],
        )
        db.session.commit()

    return {
        "ok": True,
        "mode": STATUS_TRIAL if trial_days > 0 else "PAYMENT",
        "tenantId": tenant.id,
        "asaasCustomerId": customer_id,
        "asaasSubscriptionId": subscription.id,
        "cycle": cycle,
        "trialDays": trial_days,
        "trial_ends_at": iso(trial_ends_at) if trial_days > 0 else None,
        "payment": payment if payment and payment.get("invoiceUrl") else None,
    }


# =========================
# Change plan
# =========================
def change_plan(tenant_id: str, cycle, *, gateway, config: BillingConfig) -> Dict[str, Any]:
    cycle = normalize_cycle(cycle, default=None)
    tenant = _get_tenant(tenant_id)

    if (tenant.plan or "").strip().upper() == cycle:
        raise BillingValidationError("Este plano já está selecionado.", code="PLAN_UNCHANGED")

    subscription_id = (tenant.external_subscription_id or "").strip()
    if not subscription_id:
        raise BillingValidationError("Nenhuma assinatura Asaas vinculada ao tenant.", code="NO_SUBSCRIPTION")

    value = config.plan_value(cycle)
    updated = gateway.update_subscription(subscription_id, cycle=cycle, value=value)

    tenant.plan = cycle
    fields = {"tenant_id": tenant.id, "cycle": cycle}
    if updated.status:
        fields["status"] = updated.status
    if updated.next_due_date:
        fields["next_due_date"] = updated.next_due_date
    repo.upsert_mirror(subscription_id, **fields)
    db.session.commit()

    log_event("asaas_plan_changed", tenant_id=tenant.id, subscription_id=subscription_id, cycle=cycle)
    return {"ok": True, "tenantId": tenant.id, "asaasSubscriptionId": subscription_id,
            "cycle": cycle, "value": value}


# =========================
# Cancel
# =========================
def cancel_subscription(tenant_id: str, *, gateway) -> Dict[str, Any]:
    """
    El DELETE en el gateway es best-effort: si falla se loguea y se sigue.
    Localmente siempre queda CANCELED y se suelta el vínculo de la suscripción.
    """
    tenant = _get_tenant(tenant_id)
    subscription_id = (tenant.external_subscription_id or "").strip()
    if not subscription_id:
        raise BillingValidationError("Nenhuma assinatura Asaas vinculada ao tenant.", code="NO_SUBSCRIPTION")

    upstream = {"ok": True}
    try:
        gateway.delete_subscription(subscription_id)
    except UpstreamError as e:
        CANCEL_UPSTREAM_ERR.inc()
        upstream = {"ok": False, "error": e.message}
        log_event("asaas_cancel_upstream_failed", tenant_id=tenant.id,
                  subscription_id=subscription_id, err=e.message)

    repo.upsert_mirror(
        subscription_id,
        tenant_id=tenant.id,
        status=STATUS_CANCELED,
        billing_status=STATUS_CANCELED,
        current_period_end=None,
    )
    tenant.subscription_status = STATUS_CANCELED
    tenant.current_period_end = None
    tenant.past_due_since = None
    tenant.external_subscription_id = None
    db.session.commit()

    log_event("asaas_subscription_canceled", tenant_id=tenant.id, subscription_id=subscription_id,
              upstream_ok=upstream["ok"])
    return {"ok": True, "tenantId": tenant.id, "canceled": True,
            "asaasSubscriptionId": subscription_id, "upstream": upstream}


# =========================
# Sync (reconciliación)
# =========================
def sync_subscriptions(*, gateway) -> Dict[str, Any]:
    """
    Recorre tenants con customer en el gateway y espeja sus suscripciones.
    Un tenant que falla no aborta el barrido: el error queda en el reporte.
    """
    targets = [(t.id, t.external_customer_id) for t in repo.tenants_with_customer()]
    log_event("billing_sync_start", tenants=len(targets))

    updated = 0
    errors = []
    for tenant_id, customer_id in targets:
        try:
            count = 0
            for sub in gateway.iter_customer_subscriptions(customer_id):
                repo.upsert_mirror(
                    sub.id,
                    external_customer_id=customer_id,
                    tenant_id=tenant_id,
                    cycle=sub.cycle,
                    status=sub.status,
                    next_due_date=sub.next_due_date,
                )
                count += 1
            db.session.commit()
            updated += count
            SYNC_UPD.inc(count)
        except (UpstreamError, SQLAlchemyError) as e:
            db.session.rollback()
            SYNC_ERR.inc()
            message = e.message if isinstance(e, UpstreamError) else str(e)
            errors.append({"tenantId": tenant_id, "customerId": customer_id, "error": message})
            log_event("billing_sync_tenant_failed", tenant_id=tenant_id, customer_id=customer_id, err=message)

    log_event("billing_sync_done", total=len(targets), updated=updated, errors=len(errors))
    return {"ok": True, "total": len(targets), "updated": updated, "errors": errors}


# =========================
# Promo code (endpoint dedicado)
# =========================
def apply_promocode(tenant_id: str, promocode, *, user_id: str, email: Optional[str],
                    config: BillingConfig, now: Optional[datetime] = None) -> Dict[str, Any]:
    code = normalize_code(promocode)
    if not code:
        raise BillingValidationError("Digite um cupom.", code="EMPTY_PROMO_CODE")

    tenant = _get_tenant(tenant_id)

    if is_family_coupon(code, config):
        out = grant_family_lifetime(tenant, email, config)
        db.session.commit()
        return out

    return redeem_promocode(tenant, code, user_id=user_id, config=config, now=now)


# =========================
# Resumen financiero del tenant
# =========================
_RECEIVED_PAYMENT_STATUSES = ("RECEIVED", "CONFIRMED", "RECEIVED_IN_CASH")


def payment_summary(tenant_id: str) -> Dict[str, Any]:
    """Totales de cobros recibidos (bruto / neto / último pago) a partir de billing_payments."""
    tenant = _get_tenant(tenant_id)
    received = [
        p for p in repo.payments_for_tenant(tenant.id)
        if (p.status or "").upper() in _RECEIVED_PAYMENT_STATUSES
    ]
    dates = sorted(p.payment_date for p in received if p.payment_date)
    return {
        "ok": True,
        "tenantId": tenant.id,
        "totals": {
            "received_count": len(received),
            "received_gross": round(sum(p.value or 0 for p in received), 2),
            "received_net": round(sum(p.net_value or 0 for p in received), 2),
            "last_payment_date": dates[-1].isoformat() if dates else None,
        },
    }


# =========================
# Listado de suscripciones en el gateway (operador)
# =========================
def list_gateway_subscriptions(*, gateway, email: Optional[str] = None, status: Optional[str] = None,
                               limit: int = 100, offset: int = 0) -> Dict[str, Any]:
    email = (email or "").strip().lower() or None
    status = (status or "").strip().upper() or None

    customer_id = None
    if email:
        customer = gateway.find_customer_by_email(email)
        if customer is None:
            return {"ok": True, "data": [], "total": 0, "limit": limit, "offset": offset,
                    "message": "Nenhum cliente encontrado com este email"}
        customer_id = customer.id

    page = gateway.list_subscriptions(customer_id, status=status, limit=limit, offset=offset)
    try:
        subs = [GatewaySubscription.model_validate(item) for item in page.data]
    except ValidationError as e:
        raise UpstreamError("Resposta inesperada do Asaas (subscriptions)", path="/subscriptions") from e
    return {
        "ok": True,
        "data": [
            {
                "id": s.id,
                "customer_id": s.customer,
                "status": s.status,
                "billing_type": s.billing_type,
                "cycle": s.cycle,
                "value": s.value,
                "next_due_date": s.next_due_date.isoformat() if s.next_due_date else None,
                "external_reference": s.external_reference,
            }
            for s in subs
        ],
        "total": page.total_count if page.total_count is not None else len(subs),
        "limit": limit,
        "offset": offset,
    }
