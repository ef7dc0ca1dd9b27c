# backend/zona_pedidos/repositories/billing_repository.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from zona_pedidos.db.database import db
from zona_pedidos.billing.models import BillingPayment, Profile, SubscriptionMirror, Tenant

_MIRROR_FIELDS = {
    "external_customer_id", "tenant_id", "email", "cycle", "status", "next_due_date",
    "current_period_end", "billing_status", "last_payment_id", "last_invoice_url",
}


# =========================
# Tenants
# =========================
def tenant_id_for_user(user_id: str) -> Optional[str]:
    row = db.session.execute(
        text("SELECT tenant_id FROM profiles WHERE user_id = :uid LIMIT 1"),
        {"uid": str(user_id)},
    ).first()
    return str(row[0]) if row and row[0] else None


def get_tenant(tenant_id: str) -> Optional[Tenant]:
    return db.session.get(Tenant, str(tenant_id))


def find_tenant_by_customer(customer_id: str) -> Optional[Tenant]:
    return Tenant.query.filter_by(external_customer_id=str(customer_id)).first()


def find_tenant_by_subscription(subscription_id: str) -> Optional[Tenant]:
    return Tenant.query.filter_by(external_subscription_id=str(subscription_id)).first()


def tenants_with_customer() -> List[Tenant]:
    return (
        Tenant.query
        .filter(Tenant.external_customer_id.isnot(None), Tenant.external_customer_id != "")
        .order_by(Tenant.id.asc())
        .all()
    )


def link_profile(user_id: str, tenant_id: str) -> Profile:
    """Solo lo usan scripts/tests; el alta real de perfiles vive fuera de billing."""
    prof = Profile(user_id=str(user_id), tenant_id=str(tenant_id))
    db.session.merge(prof)
    return prof


# =========================
# Espejo de suscripción
# =========================
def get_mirror(subscription_id: str) -> Optional[SubscriptionMirror]:
    return (
        SubscriptionMirror.query
        .filter_by(external_subscription_id=str(subscription_id))
        .populate_existing()
        .first()
    )


def latest_mirror_for_tenant(tenant_id: str) -> Optional[SubscriptionMirror]:
    return (
        SubscriptionMirror.query
        .filter_by(tenant_id=str(tenant_id))
        .order_by(SubscriptionMirror.updated_at.desc())
        .populate_existing()
        .first()
    )


def upsert_mirror(external_subscription_id: str, **fields: Any) -> Dict[str, Any]:
    """
    INSERT ... ON CONFLICT (external_subscription_id) DO UPDATE
    Solo toca las columnas recibidas (upsert parcial, gana la última escritura).
    """
    unknown = set(fields) - _MIRROR_FIELDS
    if unknown:
        raise ValueError(f"columnas desconocidas en espejo: {sorted(unknown)}")

    values = dict(fields)
    values["updated_at"] = datetime.now(timezone.utc)

    dialect = db.session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert

    stmt = insert(SubscriptionMirror).values(
        external_subscription_id=str(external_subscription_id), **values
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_subscription_id"],
        set_={k: getattr(stmt.excluded, k) for k in values},
    )
    db.session.execute(stmt)
    return {"external_subscription_id": str(external_subscription_id), **values}


# =========================
# Cobros (resumen financiero)
# =========================
_PAYMENT_FIELDS = {
    "tenant_id", "external_subscription_id", "status", "billing_type", "value",
    "net_value", "due_date", "payment_date", "invoice_url",
}


def upsert_payment(external_payment_id: str, **fields: Any) -> None:
    """Mismo upsert parcial que el espejo, por external_payment_id."""
    unknown = set(fields) - _PAYMENT_FIELDS
    if unknown:
        raise ValueError(f"columnas desconocidas en cobros: {sorted(unknown)}")

    values = {k: v for k, v in fields.items() if v is not None}
    values["updated_at"] = datetime.now(timezone.utc)

    dialect = db.session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert

    stmt = insert(BillingPayment).values(external_payment_id=str(external_payment_id), **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_payment_id"],
        set_={k: getattr(stmt.excluded, k) for k in values},
    )
    db.session.execute(stmt)


def payments_for_tenant(tenant_id: str) -> List[BillingPayment]:
    return (
        BillingPayment.query
        .filter_by(tenant_id=str(tenant_id))
        .populate_existing()
        .all()
    )
