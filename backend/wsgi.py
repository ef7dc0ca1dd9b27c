# backend/wsgi.py: entrypoint de gunicorn (gunicorn -c gunicorn.conf.py wsgi:app)
import logging
import os

log = logging.getLogger("gunicorn.error")


def _degraded_app(reason: str):
    """App mínima: el health check responde 503 y el deploy no queda en crash-loop."""
    from flask import Flask, jsonify
    degraded = Flask(__name__)

    @degraded.get("/healthz")
    def _health():
        return jsonify(ok=False, degraded=True, reason=reason), 503

    @degraded.route("/", defaults={"path": ""})
    @degraded.route("/<path:path>", methods=["GET", "POST"])
    def _unavailable(path):
        return jsonify(ok=False, code="SERVICE_DEGRADED", message="Billing indisponível"), 503

    return degraded


if os.getenv("FORCE_WSGI_FALLBACK", "").lower() in {"1", "true", "yes"}:
    app = _degraded_app("forced")
else:
    try:
        from zona_pedidos import create_app
        app = create_app()
    except Exception as e:
        # DB caída o config rota: se loguea y se sirve el modo degradado
        log.exception("create_app() falló; sirviendo modo degradado")
        app = _degraded_app(type(e).__name__)
