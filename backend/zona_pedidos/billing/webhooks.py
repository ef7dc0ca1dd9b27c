# backend/zona_pedidos/billing/webhooks.py
# Webhook de Asaas.
#   1) se registra el evento (billing_events, RECEIVED)
#   2) se procesa: PROCESSED / IGNORED / FAILED
#   3) siempre 200 {"received": true} si el JSON es válido: Asaas no debe
#      reintentar eventos irrelevantes; los FAILED se reintentan por operador.
import hmac
import json
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, jsonify, request

from zona_pedidos.config import BillingConfig
from zona_pedidos.db.database import db
from zona_pedidos.errors import BillingError
from zona_pedidos.extensions import billing_config
from zona_pedidos.billing.models import (
    CYCLES, EVENT_FAILED, EVENT_IGNORED, EVENT_PROCESSED, EVENT_RECEIVED,
    PLAN_FAMILY, PLAN_FREE, PLAN_PAID, STATUS_ACTIVE, STATUS_CANCELED,
    STATUS_INACTIVE, STATUS_PAST_DUE, BillingEvent, Tenant,
)
from zona_pedidos.billing.schemas import (
    PaymentEvent, SubscriptionEvent, WebhookEvent, parse_webhook_event, webhook_event_name,
)
from zona_pedidos.billing.timeutils import date_to_utc, now_utc, parse_gateway_time
from zona_pedidos.observability.events import log_event
from zona_pedidos.observability.metrics import WEBHOOK_ERR, WEBHOOK_IGNORED, WEBHOOK_RCVD
from zona_pedidos.repositories import billing_repository as repo

webhooks_bp = Blueprint(
    "webhooks_billing",
    __name__,
    url_prefix="/webhooks/billing",
)

_KEEP = object()   # "no tocar current_period_end"
_CLEAR = None

PAID_PLANS = set(CYCLES) | {PLAN_FAMILY, "LIFETIME"}


# =========================
# Tabla evento → (status, fin de periodo)
# =========================
def transition_for(evt: WebhookEvent) -> Tuple[Optional[str], Any]:
    """
    Devuelve (nuevo_status, period_end) donde period_end es un datetime,
    None (limpiar) o _KEEP. (None, _KEEP) = evento sin efecto.
    """
    name = evt.event

    if isinstance(evt, PaymentEvent):
        due = date_to_utc(evt.payment.due_date)
        if name in ("PAYMENT_RECEIVED", "PAYMENT_CONFIRMED"):
            return STATUS_ACTIVE, (due if due else _KEEP)
        if name == "PAYMENT_OVERDUE":
            return STATUS_PAST_DUE, (due if due else _KEEP)
        if name in ("PAYMENT_DELETED", "PAYMENT_REFUNDED"):
            return STATUS_INACTIVE, _CLEAR

    if isinstance(evt, SubscriptionEvent):
        if name in ("SUBSCRIPTION_CREATED", "SUBSCRIPTION_UPDATED"):
            st = evt.subscription.status or STATUS_ACTIVE
            due = date_to_utc(evt.subscription.next_due_date)
            return st, (due if due else _KEEP)
        if name in ("SUBSCRIPTION_INACTIVATED", "SUBSCRIPTION_DELETED"):
            return STATUS_INACTIVE, _CLEAR

    return None, _KEEP


def _tenant_from_reference(ref: Optional[str]) -> Optional[Tenant]:
    ref = (ref or "").strip()
    if ref.startswith("tenant:"):
        ref = ref.split(":", 1)[1].strip()
    return repo.get_tenant(ref) if ref else None


def resolve_event_tenant(evt: WebhookEvent) -> Optional[Tenant]:
    """customer → subscription → externalReference."""
    tenant = None
    if evt.customer_id:
        tenant = repo.find_tenant_by_customer(evt.customer_id)
    if tenant is None and evt.subscription_id:
        tenant = repo.find_tenant_by_subscription(evt.subscription_id)
    if tenant is None and evt.external_reference:
        tenant = _tenant_from_reference(evt.external_reference)
    return tenant


def apply_event(evt: WebhookEvent, now: Optional[datetime] = None) -> Tuple[str, Optional[str], Optional[str]]:
    """
    Aplica el evento al tenant + espejo. Es un SET de campos (no incrementos):
    reprocesar el mismo payload converge al mismo estado.
    Devuelve (estado_del_evento, motivo, tenant_id). No hace commit.
    """
    new_status, period_end = transition_for(evt)
    if new_status is None:
        return EVENT_IGNORED, "unrecognized_event", None

    if not evt.customer_id:
        return EVENT_IGNORED, "no_customer", None

    tenant = resolve_event_tenant(evt)
    if tenant is None:
        return EVENT_IGNORED, "tenant_not_found", None

    event_time = parse_gateway_time(evt.date_created) or now or now_utc()

    tenant.subscription_status = new_status
    if period_end is not _KEEP:
        tenant.current_period_end = period_end

    if new_status == STATUS_ACTIVE:
        tenant.trial_ends_at = None
        if (tenant.plan or "").upper() not in PAID_PLANS:
            tenant.plan = PLAN_PAID
    elif new_status == STATUS_INACTIVE:
        tenant.plan = PLAN_FREE

    if new_status == STATUS_PAST_DUE:
        # ancla de gracia: solo la primera vez (reentregas no la corren)
        if tenant.past_due_since is None:
            tenant.past_due_since = event_time
    else:
        tenant.past_due_since = None

    tenant.external_customer_id = evt.customer_id
    if evt.subscription_id and new_status not in (STATUS_INACTIVE, STATUS_CANCELED):
        tenant.external_subscription_id = evt.subscription_id

    if evt.subscription_id:
        fields: Dict[str, Any] = {
            "tenant_id": tenant.id,
            "external_customer_id": evt.customer_id,
            "billing_status": new_status,
        }
        if period_end is not _KEEP:
            fields["current_period_end"] = period_end
        if isinstance(evt, SubscriptionEvent):
            fields["status"] = evt.subscription.status
            if evt.subscription.cycle:
                fields["cycle"] = evt.subscription.cycle
            if evt.subscription.next_due_date:
                fields["next_due_date"] = evt.subscription.next_due_date
        else:
            fields["last_payment_id"] = evt.payment.id
            if evt.payment.invoice_url:
                fields["last_invoice_url"] = evt.payment.invoice_url
        repo.upsert_mirror(evt.subscription_id, **fields)

    if isinstance(evt, PaymentEvent):
        payment = evt.payment
        repo.upsert_payment(
            payment.id,
            tenant_id=tenant.id,
            external_subscription_id=evt.subscription_id,
            status=(payment.status or "").upper() or None,
            billing_type=payment.billing_type,
            value=payment.value,
            net_value=payment.net_value,
            due_date=payment.due_date,
            payment_date=payment.payment_date,
            invoice_url=payment.invoice_url,
        )

    log_event("asaas_webhook_applied", gateway_event=evt.event, tenant_id=tenant.id,
              status=new_status, subscription_id=evt.subscription_id)
    return EVENT_PROCESSED, None, tenant.id


# =========================
# Cola de ingesta
# =========================
def record_event(body: Dict[str, Any], event_name: str) -> BillingEvent:
    row = BillingEvent(provider="asaas", event=event_name, payload=body, status=EVENT_RECEIVED)
    db.session.add(row)
    db.session.commit()
    return row


def process_recorded_event(row: BillingEvent, now: Optional[datetime] = None) -> str:
    """Procesa una fila de billing_events. Un fallo queda FAILED (reintentable), no se propaga."""
    row_id = row.id
    try:
        try:
            evt = parse_webhook_event(row.payload)
        except BillingError as e:
            # payload mal formado: reintentar no lo arregla
            status, reason, tenant_id = EVENT_IGNORED, "malformed_payload", None
            row.last_error = json.dumps(e.to_json(), default=str)[:2000]
        else:
            status, reason, tenant_id = apply_event(evt, now=now)
            row.last_error = None
        row.status = status
        row.reason = reason
        row.tenant_id = tenant_id
        row.attempts = (row.attempts or 0) + 1
        row.processed_at = now_utc()
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        WEBHOOK_ERR.inc()
        log_event("asaas_webhook_failed", event_id=row_id, err=repr(e))
        failed = db.session.get(BillingEvent, row_id)
        failed.status = EVENT_FAILED
        failed.attempts = (failed.attempts or 0) + 1
        failed.last_error = repr(e)[:2000]
        db.session.commit()
        return EVENT_FAILED

    if status == EVENT_IGNORED:
        WEBHOOK_IGNORED.inc()
        log_event("asaas_webhook_ignored", event_id=row_id, reason=reason)
    return status


def retry_failed_events(config: BillingConfig, limit: int = 100) -> Dict[str, int]:
    rows = (
        BillingEvent.query
        .filter(BillingEvent.status == EVENT_FAILED,
                BillingEvent.attempts < config.webhook_max_attempts)
        .order_by(BillingEvent.id.asc())
        .limit(limit)
        .all()
    )
    out = {"retried": 0, "processed": 0, "ignored": 0, "failed": 0}
    for row in rows:
        out["retried"] += 1
        status = process_recorded_event(row)
        key = {EVENT_PROCESSED: "processed", EVENT_IGNORED: "ignored"}.get(status, "failed")
        out[key] += 1
    log_event("asaas_webhook_retry_done", **out)
    return out


# =========================
# Endpoint
# =========================
def _valid_token(provided: str, expected: str) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


@webhooks_bp.post("/asaas")
def asaas_webhook():
    cfg = billing_config()
    WEBHOOK_RCVD.inc()

    # 🔐 token compartido (actívalo en prod con ASAAS_WEBHOOK_TOKEN)
    if cfg.webhook_token:
        if not _valid_token(request.headers.get("asaas-access-token", ""), cfg.webhook_token):
            log_event("asaas_webhook_bad_token", ip=request.headers.get("X-Forwarded-For", request.remote_addr))
            return jsonify({"ok": False, "code": "INVALID_WEBHOOK_TOKEN"}), 401

    body = request.get_json(silent=True)
    try:
        event_name = webhook_event_name(body)
    except BillingError as e:
        return jsonify(e.to_json()), e.http_status

    # se registra ANTES de validar el resto: un sub-objeto raro no se pierde
    log_event("asaas_webhook_received", gateway_event=event_name, event_id=body.get("id"))
    row = record_event(body, event_name)
    status = process_recorded_event(row)
    return jsonify({"received": True, "status": status}), 200
