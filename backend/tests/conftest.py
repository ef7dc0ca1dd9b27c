# backend/tests/conftest.py
from unittest.mock import MagicMock

import pytest
from flask_jwt_extended import create_access_token

from zona_pedidos import create_app
from zona_pedidos.config import BillingConfig
from zona_pedidos.db.database import db
from zona_pedidos.billing.asaas_client import AsaasClient
from zona_pedidos.billing.models import Tenant
from zona_pedidos.repositories.billing_repository import link_profile

TEST_JWT_SECRET = "test-secret-zona-pedidos-0123456789abcdef"
OWNER_EMAIL = "dono@padaria.com.br"


@pytest.fixture
def billing_cfg():
    return BillingConfig(
        asaas_api_key="test-asaas-key",
        plan_value_monthly=49.9,
        plan_value_yearly=499.0,
        family_coupon="FAMILIA2024",
        family_emails=("mae@familia.com.br",),
        invoice_poll_attempts=3,
        invoice_poll_interval=0,
        operator_token="op-secret",
    )


@pytest.fixture
def gateway():
    return MagicMock(spec=AsaasClient)


@pytest.fixture
def app(billing_cfg, gateway):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "JWT_SECRET_KEY": TEST_JWT_SECRET,
            "BILLING_CREATE_TABLES": True,
        },
        billing_config=billing_cfg,
        asaas_client=gateway,
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_tenant(app):
    def _make(**fields):
        fields.setdefault("name", "Padaria Pão Quente")
        fields.setdefault("cnpj", "12.345.678/0001-95")
        tenant = Tenant(**fields)
        db.session.add(tenant)
        db.session.commit()
        return tenant
    return _make


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def make_headers(app):
    def _headers(tenant_id=None, user_id="user-1", email=OWNER_EMAIL):
        if tenant_id is not None:
            link_profile(user_id, tenant_id)
            db.session.commit()
        claims = {"email": email} if email else {}
        token = create_access_token(identity=user_id, additional_claims=claims)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def auth_headers(tenant, make_headers):
    return make_headers(tenant.id)


@pytest.fixture
def operator_headers():
    return {"X-Operator-Token": "op-secret"}
