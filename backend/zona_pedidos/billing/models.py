# backend/zona_pedidos/billing/models.py
import uuid

from zona_pedidos.db.database import db

# Estados cerrados del billing efectivo
STATUS_PENDING = "PENDING"
STATUS_TRIAL = "TRIAL"
STATUS_ACTIVE = "ACTIVE"
STATUS_PAST_DUE = "PAST_DUE"
STATUS_INACTIVE = "INACTIVE"
STATUS_CANCELED = "CANCELED"

KNOWN_STATUSES = (
    STATUS_PENDING, STATUS_ACTIVE, STATUS_PAST_DUE,
    STATUS_INACTIVE, STATUS_CANCELED, STATUS_TRIAL,
)

PLAN_FREE = "free"
PLAN_PAID = "paid"
PLAN_FAMILY = "FAMILY"
CYCLES = ("MONTHLY", "YEARLY")


def _uuid() -> str:
    return str(uuid.uuid4())


class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String)
    cnpj = db.Column(db.String)          # CPF o CNPJ (tax id)
    phone = db.Column(db.String)
    billing_email = db.Column(db.String)

    subscription_status = db.Column(db.String, nullable=False, default=STATUS_INACTIVE,
                                    server_default=STATUS_INACTIVE)
    plan = db.Column(db.String, nullable=False, default=PLAN_FREE, server_default=PLAN_FREE)

    trial_started_at = db.Column(db.DateTime(timezone=True))
    trial_ends_at = db.Column(db.DateTime(timezone=True))
    # NULL con ACTIVE = vitalicio
    current_period_end = db.Column(db.DateTime(timezone=True))
    past_due_since = db.Column(db.DateTime(timezone=True))
    grace_days = db.Column(db.Integer)

    external_customer_id = db.Column(db.String, index=True)
    external_subscription_id = db.Column(db.String, index=True)

    created_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )


class Profile(db.Model):
    """Vínculo usuario (auth provider) → tenant. Solo lectura para billing."""
    __tablename__ = "profiles"

    user_id = db.Column(db.String(64), primary_key=True)
    tenant_id = db.Column(db.String(36), db.ForeignKey("tenants.id", ondelete="CASCADE"))


class SubscriptionMirror(db.Model):
    """Copia local de la suscripción del gateway (upsert por external_subscription_id)."""
    __tablename__ = "billing_subscriptions"

    external_subscription_id = db.Column(db.String, primary_key=True)
    external_customer_id = db.Column(db.String)
    tenant_id = db.Column(db.String(36), index=True)
    email = db.Column(db.String)
    cycle = db.Column(db.String)
    status = db.Column(db.String)
    next_due_date = db.Column(db.Date)
    current_period_end = db.Column(db.DateTime(timezone=True))
    billing_status = db.Column(db.String)
    last_payment_id = db.Column(db.String)
    last_invoice_url = db.Column(db.Text)
    updated_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())


class BillingPayment(db.Model):
    """Cobros del gateway vistos por webhook (base del resumen financiero)."""
    __tablename__ = "billing_payments"

    external_payment_id = db.Column(db.String, primary_key=True)
    tenant_id = db.Column(db.String(36), index=True)
    external_subscription_id = db.Column(db.String)
    status = db.Column(db.String)
    billing_type = db.Column(db.String)
    value = db.Column(db.Float)
    net_value = db.Column(db.Float)
    due_date = db.Column(db.Date)
    payment_date = db.Column(db.Date)
    invoice_url = db.Column(db.Text)
    updated_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())


class PromoCode(db.Model):
    __tablename__ = "promo_codes"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String, nullable=False, unique=True)
    kind = db.Column(db.String, nullable=False, default="TRIAL")   # TRIAL | LIFETIME
    trial_days = db.Column(db.Integer)
    plan = db.Column(db.String)
    starts_at = db.Column(db.DateTime(timezone=True))
    expires_at = db.Column(db.DateTime(timezone=True))
    max_uses = db.Column(db.Integer)
    uses_count = db.Column(db.Integer, nullable=False, default=0, server_default=db.text("0"))
    active = db.Column(db.Boolean, nullable=False, default=True, server_default=db.true())
    created_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())


class PromoRedemption(db.Model):
    __tablename__ = "promo_redemptions"

    id = db.Column(db.Integer, primary_key=True)
    promo_code_id = db.Column(db.Integer, db.ForeignKey("promo_codes.id", ondelete="CASCADE"),
                              nullable=False)
    tenant_id = db.Column(db.String(36), nullable=False)
    user_id = db.Column(db.String(64))
    redeemed_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())

    __table_args__ = (
        # una redención por (cupón, tenant): la garantía la da el índice, no un SELECT previo
        db.UniqueConstraint("promo_code_id", "tenant_id", name="uq_promo_redemption_code_tenant"),
    )


EVENT_RECEIVED = "RECEIVED"
EVENT_PROCESSED = "PROCESSED"
EVENT_IGNORED = "IGNORED"
EVENT_FAILED = "FAILED"


class BillingEvent(db.Model):
    """Cola de ingesta del webhook: todo lo que llega queda registrado y es reintentable."""
    __tablename__ = "billing_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String, nullable=False, default="asaas")
    event = db.Column(db.String, nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String, nullable=False, default=EVENT_RECEIVED, index=True)
    reason = db.Column(db.String)
    tenant_id = db.Column(db.String(36))
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text)
    received_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())
    processed_at = db.Column(db.DateTime(timezone=True))
