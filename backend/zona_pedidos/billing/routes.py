# backend/zona_pedidos/billing/routes.py
import hmac

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from zona_pedidos.errors import BillingValidationError, OperatorAuthError
from zona_pedidos.extensions import billing_config, gateway
from zona_pedidos.core.auth.identity import current_caller
from zona_pedidos.billing import service
from zona_pedidos.billing.access import is_access_allowed
from zona_pedidos.billing.resolver import resolve_billing
from zona_pedidos.billing.webhooks import retry_failed_events

billing_bp = Blueprint(
    "billing",
    __name__,
    url_prefix="/api/billing",
)


def _json_body() -> dict:
    if not request.data:
        return {}
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise BillingValidationError("JSON inválido.", code="BAD_JSON")
    return body


def _require_operator():
    """Header X-Operator-Token == BILLING_OPERATOR_TOKEN (cron / soporte)."""
    expected = billing_config().operator_token or ""
    provided = request.headers.get("X-Operator-Token", "")
    if not (expected and provided and hmac.compare_digest(provided, expected)):
        raise OperatorAuthError()


@billing_bp.get("/ping")
def ping():
    return jsonify({"ok": True, "module": "billing"})


@billing_bp.get("/status")
@jwt_required()
def billing_status():
    caller = current_caller()
    billing = resolve_billing(caller.tenant_id)
    cfg = billing_config()
    out = billing.to_json()
    out["access"] = {"allowed": is_access_allowed(billing, default_grace_days=cfg.default_grace_days)}
    return jsonify(out), 200


@billing_bp.get("/access")
@jwt_required()
def billing_access():
    caller = current_caller()
    billing = resolve_billing(caller.tenant_id)
    cfg = billing_config()
    return jsonify({
        "ok": True,
        "allowed": is_access_allowed(billing, default_grace_days=cfg.default_grace_days),
        "status": billing.status,
        "lifetime": billing.is_lifetime,
    }), 200


@billing_bp.post("/start-trial")
@jwt_required()
def billing_start_trial():
    caller = current_caller()
    out = service.start_trial(caller.tenant_id, billing_config())
    return jsonify(out), 200


@billing_bp.post("/subscriptions")
@jwt_required()
def billing_create_subscription():
    caller = current_caller()
    body = _json_body()
    out = service.create_subscription(
        caller.tenant_id,
        user_id=caller.user_id,
        email=caller.email,
        cycle=body.get("cycle"),
        promocode=body.get("promocode") or body.get("promoCode"),
        gateway=gateway(),
        config=billing_config(),
    )
    return jsonify(out), 200


@billing_bp.post("/change-plan")
@jwt_required()
def billing_change_plan():
    caller = current_caller()
    body = _json_body()
    out = service.change_plan(caller.tenant_id, body.get("cycle"), gateway=gateway(), config=billing_config())
    return jsonify(out), 200


@billing_bp.post("/cancel")
@jwt_required()
def billing_cancel():
    caller = current_caller()
    out = service.cancel_subscription(caller.tenant_id, gateway=gateway())
    return jsonify(out), 200


@billing_bp.post("/promocode/apply")
@jwt_required()
def billing_apply_promocode():
    caller = current_caller()
    body = _json_body()
    out = service.apply_promocode(
        caller.tenant_id,
        body.get("promocode"),
        user_id=caller.user_id,
        email=caller.email,
        config=billing_config(),
    )
    return jsonify(out), 200


@billing_bp.get("/summary")
@jwt_required()
def billing_summary():
    caller = current_caller()
    return jsonify(service.payment_summary(caller.tenant_id)), 200


# ===== Mantenimiento (operador) =====
@billing_bp.post("/sync")
def billing_sync():
    _require_operator()
    out = service.sync_subscriptions(gateway=gateway())
    return jsonify(out), 200


@billing_bp.post("/events/retry")
def billing_events_retry():
    _require_operator()
    body = _json_body()
    try:
        limit = int(body.get("limit", 100))
    except (TypeError, ValueError):
        limit = 100
    out = retry_failed_events(billing_config(), limit=max(1, limit))
    return jsonify({"ok": True, **out}), 200


@billing_bp.get("/subscriptions")
def billing_gateway_subscriptions():
    """Listado de suscripciones en Asaas (?email=&status=&limit=&offset=)."""
    _require_operator()
    limit = min(max(request.args.get("limit", 100, type=int) or 100, 1), 100)
    offset = max(request.args.get("offset", 0, type=int) or 0, 0)
    out = service.list_gateway_subscriptions(
        gateway=gateway(),
        email=request.args.get("email"),
        status=request.args.get("status"),
        limit=limit,
        offset=offset,
    )
    return jsonify(out), 200
