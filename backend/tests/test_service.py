from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from zona_pedidos.db.database import db
from zona_pedidos.errors import (
    BillingValidationError, ConfigurationError, CouponNotAllowedError, UpstreamError,
)
from zona_pedidos.billing import service
from zona_pedidos.billing.models import BillingPayment, PromoCode, PromoRedemption, SubscriptionMirror, Tenant
from zona_pedidos.billing.schemas import GatewayCustomer, GatewayPage, GatewayPayment, GatewaySubscription

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
EMAIL = "dono@padaria.com.br"


def _mirror(sub_id):
    return SubscriptionMirror.query.filter_by(external_subscription_id=sub_id).populate_existing().one()


@pytest.fixture
def happy_gateway(gateway):
    gateway.create_customer.return_value = GatewayCustomer(id="cus_1", cpf_cnpj="12345678000195")
    gateway.get_customer.return_value = GatewayCustomer(id="cus_1", cpf_cnpj="12345678000195")
    gateway.create_subscription.return_value = GatewaySubscription(
        id="sub_1", customer="cus_1", status="ACTIVE", next_due_date=date(2025, 6, 1),
    )
    gateway.list_payments.return_value = [
        GatewayPayment(id="pay_1", status="PENDING", invoice_url="https://asaas.test/i/pay_1"),
    ]
    return gateway


# =========================
# Start trial
# =========================
def test_start_trial_is_one_shot(tenant, billing_cfg):
    first = service.start_trial(tenant.id, billing_cfg, now=NOW)
    assert first["started"] is True
    db.session.refresh(tenant)
    ends = tenant.trial_ends_at

    second = service.start_trial(tenant.id, billing_cfg, now=NOW + timedelta(days=1))
    assert second["started"] is False
    assert second["reason"] == "trial_already_used"
    db.session.refresh(tenant)
    assert tenant.trial_ends_at == ends
    assert tenant.subscription_status == "TRIAL"


def test_start_trial_lasts_seven_days(tenant, billing_cfg):
    out = service.start_trial(tenant.id, billing_cfg, now=NOW)
    assert out["tenant"]["trial_ends_at"] == (NOW + timedelta(days=7)).isoformat()


@pytest.mark.parametrize("fields", [
    {"subscription_status": "ACTIVE"},
    {"subscription_status": "CANCELED", "current_period_end": NOW + timedelta(days=5)},
])
def test_start_trial_skips_active_tenants(make_tenant, billing_cfg, fields):
    tenant = make_tenant(**fields)
    out = service.start_trial(tenant.id, billing_cfg, now=NOW)
    assert out == {"ok": True, "tenantId": tenant.id, "started": False, "reason": "already_active"}
    db.session.refresh(tenant)
    assert tenant.trial_started_at is None


# =========================
# Create subscription
# =========================
def test_create_subscription_payment_mode(tenant, happy_gateway, billing_cfg):
    out = service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="monthly",
                                      promocode=None, gateway=happy_gateway, config=billing_cfg, now=NOW)

    assert out["mode"] == "PAYMENT"
    assert out["payment"]["invoiceUrl"] == "https://asaas.test/i/pay_1"
    happy_gateway.create_customer.assert_called_once()
    assert happy_gateway.create_customer.call_args.kwargs["external_reference"] == f"tenant:{tenant.id}"
    kwargs = happy_gateway.create_subscription.call_args.kwargs
    assert kwargs["next_due_date"] == "2025-06-01"
    assert kwargs["value"] == 49.9
    assert kwargs["billing_type"] == "UNDEFINED"

    db.session.refresh(tenant)
    assert tenant.external_customer_id == "cus_1"
    assert tenant.external_subscription_id == "sub_1"
    assert tenant.plan == "MONTHLY"
    assert tenant.billing_email == EMAIL
    mirror = _mirror("sub_1")
    assert mirror.billing_status == "PENDING"
    assert mirror.last_payment_id == "pay_1"
    assert mirror.last_invoice_url == "https://asaas.test/i/pay_1"


def test_create_subscription_polls_until_invoice(tenant, happy_gateway, billing_cfg):
    happy_gateway.list_payments.side_effect = [
        [],
        [GatewayPayment(id="pay_1", status="PENDING")],
        [GatewayPayment(id="pay_1", status="PENDING", invoice_url="https://asaas.test/i/pay_1")],
    ]
    out = service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="MONTHLY",
                                      promocode=None, gateway=happy_gateway, config=billing_cfg, now=NOW)
    assert happy_gateway.list_payments.call_count == 3
    assert out["payment"]["id"] == "pay_1"


def test_create_subscription_without_invoice_still_succeeds(tenant, happy_gateway, billing_cfg):
    happy_gateway.list_payments.return_value = []
    out = service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="YEARLY",
                                      promocode=None, gateway=happy_gateway, config=billing_cfg, now=NOW)
    assert out["payment"] is None
    assert happy_gateway.list_payments.call_count == billing_cfg.invoice_poll_attempts


def test_create_subscription_with_trial_code(tenant, happy_gateway, billing_cfg):
    db.session.add(PromoCode(code="BEMVINDO", kind="TRIAL", trial_days=14))
    db.session.commit()

    out = service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="MONTHLY",
                                      promocode="bemvindo", gateway=happy_gateway,
                                      config=billing_cfg, now=NOW)
    assert out["mode"] == "TRIAL"
    assert out["trialDays"] == 14
    assert happy_gateway.create_subscription.call_args.kwargs["next_due_date"] == "2025-06-15"
    db.session.refresh(tenant)
    assert tenant.subscription_status == "TRIAL"
    assert _mirror("sub_1").billing_status == "TRIAL"


def test_upstream_failure_does_not_consume_code(tenant, happy_gateway, billing_cfg):
    db.session.add(PromoCode(code="BEMVINDO", kind="TRIAL", trial_days=14))
    db.session.commit()
    happy_gateway.create_subscription.side_effect = UpstreamError("Cliente bloqueado", upstream_status=400)

    with pytest.raises(UpstreamError) as exc:
        service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="MONTHLY",
                                    promocode="BEMVINDO", gateway=happy_gateway,
                                    config=billing_cfg, now=NOW)
    assert exc.value.message == "Cliente bloqueado"
    assert PromoRedemption.query.count() == 0
    assert PromoCode.query.filter_by(code="BEMVINDO").one().uses_count == 0
    refreshed = db.session.get(Tenant, tenant.id)
    assert refreshed.subscription_status == "INACTIVE"
    assert refreshed.external_subscription_id is None


def test_family_coupon_grants_lifetime_without_gateway(make_tenant, gateway, billing_cfg):
    tenant = make_tenant()
    out = service.create_subscription(tenant.id, user_id="u1", email="MAE@familia.com.br",
                                      cycle="MONTHLY", promocode="familia2024", gateway=gateway,
                                      config=billing_cfg, now=NOW)
    assert out["mode"] == "LIFETIME"
    gateway.create_customer.assert_not_called()
    gateway.create_subscription.assert_not_called()
    db.session.refresh(tenant)
    assert (tenant.subscription_status, tenant.plan, tenant.current_period_end) == ("ACTIVE", "FAMILY", None)


def test_family_coupon_rejects_unlisted_email(tenant, gateway, billing_cfg):
    with pytest.raises(CouponNotAllowedError):
        service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="MONTHLY",
                                    promocode="FAMILIA2024", gateway=gateway, config=billing_cfg)


def test_missing_tax_id_rejected_before_gateway(make_tenant, gateway, billing_cfg):
    tenant = make_tenant(cnpj="123")
    with pytest.raises(BillingValidationError) as exc:
        service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="MONTHLY",
                                    promocode=None, gateway=gateway, config=billing_cfg)
    assert exc.value.code == "MISSING_TAX_ID"
    gateway.create_customer.assert_not_called()


def test_missing_email_rejected(tenant, gateway, billing_cfg):
    with pytest.raises(BillingValidationError) as exc:
        service.create_subscription(tenant.id, user_id="u1", email="", cycle="MONTHLY",
                                    promocode=None, gateway=gateway, config=billing_cfg)
    assert exc.value.code == "MISSING_EMAIL"


def test_gateway_customer_without_tax_id(make_tenant, happy_gateway, billing_cfg):
    tenant = make_tenant(external_customer_id="cus_9")
    happy_gateway.get_customer.return_value = GatewayCustomer(id="cus_9", cpf_cnpj=None)
    with pytest.raises(BillingValidationError) as exc:
        service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="MONTHLY",
                                    promocode=None, gateway=happy_gateway, config=billing_cfg)
    assert exc.value.code == "MISSING_TAX_ID_ON_GATEWAY"
    happy_gateway.update_customer.assert_called_once()
    assert happy_gateway.get_customer.call_count == 2
    happy_gateway.create_subscription.assert_not_called()


def test_missing_plan_value_is_configuration_error(tenant, happy_gateway, billing_cfg):
    cfg = replace(billing_cfg, plan_value_yearly=None)
    with pytest.raises(ConfigurationError) as exc:
        service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="YEARLY",
                                    promocode=None, gateway=happy_gateway, config=cfg)
    assert exc.value.key == "ASAAS_PLAN_VALUE_YEARLY"
    happy_gateway.create_customer.assert_not_called()


def test_invalid_cycle(tenant, gateway, billing_cfg):
    with pytest.raises(BillingValidationError) as exc:
        service.create_subscription(tenant.id, user_id="u1", email=EMAIL, cycle="WEEKLY",
                                    promocode=None, gateway=gateway, config=billing_cfg)
    assert exc.value.code == "INVALID_CYCLE"


# =========================
# Change plan
# =========================
def test_change_plan_same_cycle_rejected_without_gateway_call(make_tenant, gateway, billing_cfg):
    tenant = make_tenant(plan="MONTHLY", external_subscription_id="sub_1")
    with pytest.raises(BillingValidationError) as exc:
        service.change_plan(tenant.id, "MONTHLY", gateway=gateway, config=billing_cfg)
    assert exc.value.code == "PLAN_UNCHANGED"
    assert exc.value.message == "Este plano já está selecionado."
    gateway.update_subscription.assert_not_called()


def test_change_plan_requires_subscription(make_tenant, gateway, billing_cfg):
    tenant = make_tenant(plan="MONTHLY")
    with pytest.raises(BillingValidationError) as exc:
        service.change_plan(tenant.id, "YEARLY", gateway=gateway, config=billing_cfg)
    assert exc.value.code == "NO_SUBSCRIPTION"


def test_change_plan_updates_in_place(make_tenant, gateway, billing_cfg):
    tenant = make_tenant(plan="MONTHLY", external_subscription_id="sub_1")
    gateway.update_subscription.return_value = GatewaySubscription(id="sub_1", status="ACTIVE", cycle="YEARLY")

    out = service.change_plan(tenant.id, "yearly", gateway=gateway, config=billing_cfg)

    assert out["cycle"] == "YEARLY"
    gateway.update_subscription.assert_called_once_with("sub_1", cycle="YEARLY", value=499.0)
    gateway.delete_subscription.assert_not_called()
    db.session.refresh(tenant)
    assert tenant.plan == "YEARLY"
    assert _mirror("sub_1").cycle == "YEARLY"


# =========================
# Cancel
# =========================
def test_cancel_survives_upstream_failure(make_tenant, gateway):
    tenant = make_tenant(subscription_status="ACTIVE", plan="MONTHLY",
                         current_period_end=NOW + timedelta(days=20),
                         past_due_since=NOW, external_subscription_id="sub_1")
    gateway.delete_subscription.side_effect = UpstreamError("timeout")

    out = service.cancel_subscription(tenant.id, gateway=gateway)

    assert out["upstream"] == {"ok": False, "error": "timeout"}
    db.session.refresh(tenant)
    assert tenant.subscription_status == "CANCELED"
    assert tenant.current_period_end is None
    assert tenant.external_subscription_id is None
    assert tenant.past_due_since is None
    mirror = _mirror("sub_1")
    assert (mirror.status, mirror.billing_status, mirror.current_period_end) == ("CANCELED", "CANCELED", None)


def test_cancel_without_subscription(tenant, gateway):
    with pytest.raises(BillingValidationError) as exc:
        service.cancel_subscription(tenant.id, gateway=gateway)
    assert exc.value.code == "NO_SUBSCRIPTION"


# =========================
# Sync
# =========================
def test_sync_collects_errors_per_tenant(make_tenant, gateway):
    ok_tenant = make_tenant(external_customer_id="cus_ok")
    make_tenant(external_customer_id="cus_bad")
    make_tenant()  # sin customer: fuera del barrido

    def _subs(customer_id):
        if customer_id == "cus_bad":
            raise UpstreamError("Cliente não encontrado", upstream_status=404)
        return iter([
            GatewaySubscription(id="sub_a", customer="cus_ok", status="ACTIVE", cycle="MONTHLY"),
            GatewaySubscription(id="sub_b", customer="cus_ok", status="INACTIVE", cycle="YEARLY"),
        ])

    gateway.iter_customer_subscriptions.side_effect = _subs

    out = service.sync_subscriptions(gateway=gateway)

    assert out["total"] == 2
    assert out["updated"] == 2
    assert len(out["errors"]) == 1
    assert out["errors"][0]["customerId"] == "cus_bad"
    assert out["errors"][0]["error"] == "Cliente não encontrado"
    assert _mirror("sub_a").tenant_id == ok_tenant.id
    assert _mirror("sub_b").status == "INACTIVE"


# =========================
# Promo endpoint service
# =========================
def test_apply_family_coupon(make_tenant, billing_cfg):
    tenant = make_tenant(subscription_status="TRIAL", trial_ends_at=NOW)
    out = service.apply_promocode(tenant.id, "FAMILIA2024", user_id="u1",
                                  email="mae@familia.com.br", config=billing_cfg)
    assert out["type"] == "LIFETIME"
    db.session.refresh(tenant)
    assert tenant.trial_ends_at is None


def test_apply_empty_code(tenant, billing_cfg):
    with pytest.raises(BillingValidationError) as exc:
        service.apply_promocode(tenant.id, "  ", user_id="u1", email=EMAIL, config=billing_cfg)
    assert exc.value.code == "EMPTY_PROMO_CODE"


def test_sync_survives_unexpected_gateway_payload(make_tenant, billing_cfg):
    from unittest.mock import MagicMock

    import requests

    from zona_pedidos.billing.asaas_client import AsaasClient

    def _request(method, url, params=None, **kwargs):
        r = MagicMock()
        r.status_code = 200
        r.content = b"x"
        if params["customer"] == "cus_a":
            r.json.return_value = {"data": [{"id": "sub_a", "nextDueDate": "10/07/2025"}]}
        else:
            r.json.return_value = {"data": [{"id": "sub_b", "status": "ACTIVE", "nextDueDate": "2025-07-10"}]}
        return r

    session = MagicMock(spec=requests.Session)
    session.request.side_effect = _request
    make_tenant(external_customer_id="cus_a")
    make_tenant(external_customer_id="cus_b")

    out = service.sync_subscriptions(gateway=AsaasClient(billing_cfg, session=session))

    assert out["total"] == 2
    assert out["updated"] == 1
    assert [e["customerId"] for e in out["errors"]] == ["cus_a"]
    assert _mirror("sub_b").next_due_date == date(2025, 7, 10)
    assert SubscriptionMirror.query.filter_by(external_subscription_id="sub_a").count() == 0


# =========================
# Resumen financiero
# =========================
def test_payment_summary_counts_received_only(tenant, make_tenant):
    other = make_tenant()
    db.session.add_all([
        BillingPayment(external_payment_id="p1", tenant_id=tenant.id, status="RECEIVED",
                       value=49.9, net_value=47.9, payment_date=date(2025, 5, 10)),
        BillingPayment(external_payment_id="p2", tenant_id=tenant.id, status="CONFIRMED",
                       value=49.9, net_value=47.9, payment_date=date(2025, 6, 10)),
        BillingPayment(external_payment_id="p3", tenant_id=tenant.id, status="OVERDUE", value=49.9),
        BillingPayment(external_payment_id="p4", tenant_id=other.id, status="RECEIVED", value=499.0),
    ])
    db.session.commit()

    out = service.payment_summary(tenant.id)

    assert out["totals"] == {
        "received_count": 2,
        "received_gross": 99.8,
        "received_net": 95.8,
        "last_payment_date": "2025-06-10",
    }


def test_payment_summary_without_payments(tenant):
    out = service.payment_summary(tenant.id)
    assert out["totals"]["received_count"] == 0
    assert out["totals"]["last_payment_date"] is None


# =========================
# Listado de suscripciones del gateway
# =========================
def test_list_gateway_subscriptions_by_email(gateway):
    gateway.find_customer_by_email.return_value = GatewayCustomer(id="cus_1")
    gateway.list_subscriptions.return_value = GatewayPage.model_validate({
        "data": [{"id": "sub_1", "customer": "cus_1", "status": "ACTIVE", "cycle": "MONTHLY",
                  "billingType": "PIX", "value": 49.9, "nextDueDate": "2025-07-01"}],
        "totalCount": 1,
    })

    out = service.list_gateway_subscriptions(gateway=gateway, email=" Dono@Padaria.com.br ", status="active")

    gateway.find_customer_by_email.assert_called_once_with("dono@padaria.com.br")
    gateway.list_subscriptions.assert_called_once_with("cus_1", status="ACTIVE", limit=100, offset=0)
    assert out["total"] == 1
    assert out["data"][0] == {
        "id": "sub_1", "customer_id": "cus_1", "status": "ACTIVE", "billing_type": "PIX",
        "cycle": "MONTHLY", "value": 49.9, "next_due_date": "2025-07-01", "external_reference": None,
    }


def test_list_gateway_subscriptions_unknown_email(gateway):
    gateway.find_customer_by_email.return_value = None
    out = service.list_gateway_subscriptions(gateway=gateway, email="ninguem@x.com")
    assert out["data"] == [] and out["total"] == 0
    gateway.list_subscriptions.assert_not_called()
