# backend/zona_pedidos/routes/__init__.py
from zona_pedidos.billing.routes import billing_bp
from zona_pedidos.billing.webhooks import webhooks_bp


def register_routes(app):
    app.register_blueprint(billing_bp)      # /api/billing/...
    app.register_blueprint(webhooks_bp)     # /webhooks/billing/...
