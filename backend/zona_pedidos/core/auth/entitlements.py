# backend/zona_pedidos/core/auth/entitlements.py
from functools import wraps
from flask import jsonify, request

from zona_pedidos.billing.access import is_access_allowed
from zona_pedidos.billing.resolver import resolve_billing
from zona_pedidos.core.auth.identity import current_caller
from zona_pedidos.extensions import billing_config
from zona_pedidos.observability.events import log_event


def requires_billing_access(fn):
    """
    Decorador para rutas protegidas (pedidos, clientes, ...):
        @jwt_required()
        @requires_billing_access
        def endpoint(...):

    REGLA DE ORDEN: pon siempre @jwt_required() ENCIMA de este decorador
    para que el identity ya exista cuando evaluemos el billing.
    Se recalcula en cada llamada: trial y gracia vencen con el reloj.
    """
    @wraps(fn)
    def _wrapped(*args, **kwargs):
        caller = current_caller()
        billing = resolve_billing(caller.tenant_id)
        cfg = billing_config()

        if not is_access_allowed(billing, default_grace_days=cfg.default_grace_days):
            log_event(
                "billing_access_denied",
                tenant_id=caller.tenant_id,
                user_id=caller.user_id,
                endpoint=request.endpoint,
                ip=request.headers.get("X-Forwarded-For", request.remote_addr),
                status=billing.status,
            )
            return jsonify({
                "ok": False,
                "code": "BILLING_REQUIRED",
                "message": "Assinatura inativa. Regularize o pagamento para continuar.",
                "status": billing.status,
            }), 402

        return fn(*args, **kwargs)
    return _wrapped
