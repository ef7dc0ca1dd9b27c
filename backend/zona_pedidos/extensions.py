# backend/zona_pedidos/extensions.py
# Acceso a las dependencias armadas en create_app() (config + cliente Asaas).
from flask import current_app

from zona_pedidos.config import BillingConfig


def billing_config() -> BillingConfig:
    return current_app.extensions["billing_config"]


def gateway():
    """Cliente del gateway de pagos (AsaasClient; en tests un mock)."""
    return current_app.extensions["asaas_client"]
