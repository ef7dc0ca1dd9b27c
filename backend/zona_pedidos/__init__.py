# backend/zona_pedidos/__init__.py
from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv
import os

from .config import BillingConfig
from .db.database import db, init_db
from .errors import AuthenticationError, BillingError
from .routes import register_routes
from .observability.events import log_event


def _auth_error(message: str):
    err = AuthenticationError(message)
    return jsonify(err.to_json()), err.http_status


def create_app(config_overrides=None, billing_config: BillingConfig = None, asaas_client=None):
    load_dotenv()

    app = Flask(__name__)
    CORS(app)

    # =========================
    # Base de Datos
    # =========================
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv('DATABASE_URL', 'sqlite:///zona_pedidos.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['BILLING_CREATE_TABLES'] = os.getenv('BILLING_CREATE_TABLES', '1').lower() in ('1', 'true', 'yes')

    # =========================
    # JWT del proveedor de auth (HS256, sub = user id, aud = authenticated)
    # =========================
    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'cambia-esta-clave-en-produccion')
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', app.config['JWT_SECRET_KEY'])
    app.config['JWT_ALGORITHM'] = 'HS256'
    app.config['JWT_TOKEN_LOCATION'] = ['headers']
    app.config['JWT_DECODE_AUDIENCE'] = os.getenv('JWT_AUDIENCE', 'authenticated')
    app.config['JWT_ENCODE_AUDIENCE'] = app.config['JWT_DECODE_AUDIENCE']

    if config_overrides:
        app.config.update(config_overrides)

    # =========================
    # Billing (Asaas): se arma una sola vez
    # =========================
    cfg = billing_config or BillingConfig.from_env()
    app.extensions['billing_config'] = cfg
    if asaas_client is None:
        from .billing.asaas_client import AsaasClient
        asaas_client = AsaasClient(cfg)
    app.extensions['asaas_client'] = asaas_client

    if not cfg.asaas_api_key:
        app.logger.warning("⚠ Asaas no configurado: falta ASAAS_API_KEY.")
    else:
        app.logger.info("✅ Asaas cargado (env=%s, base=%s).", cfg.asaas_env, cfg.asaas_base_url)
    if not cfg.webhook_token:
        app.logger.warning("⚠ Webhook Asaas sin token (ASAAS_WEBHOOK_TOKEN).")

    # =========================
    # Inicialización de dependencias
    # =========================
    init_db(app)

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def _missing_token(reason):
        return _auth_error("Authorization Bearer token ausente")

    @jwt.invalid_token_loader
    def _invalid_token(reason):
        return _auth_error("Token inválido ou sessão expirada")

    @jwt.expired_token_loader
    def _expired_token(jwt_header, jwt_payload):
        return _auth_error("Token inválido ou sessão expirada")

    # =========================
    # Errores
    # =========================
    @app.errorhandler(BillingError)
    def _billing_error(e: BillingError):
        db.session.rollback()
        log_event("billing_error", code=e.code, status=e.http_status, message=e.message, detail=e.detail)
        return jsonify(e.to_json()), e.http_status

    @app.errorhandler(Exception)
    def _unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        db.session.rollback()
        app.logger.exception("unexpected_error")
        return jsonify({"ok": False, "code": "INTERNAL_ERROR", "message": "Erro inesperado na API"}), 500

    # Registra TODOS los blueprints desde routes/__init__.py
    register_routes(app)

    from .cli import register_cli
    register_cli(app)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}, 200

    from .observability.metrics import metrics_http_response

    @app.get("/metrics")
    def metrics():
        return metrics_http_response()

    return app
