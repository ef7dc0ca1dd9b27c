# backend/zona_pedidos/billing/schemas.py
# Modelos del gateway (Asaas) y variantes tipadas del webhook.
# Se validan en el borde; la máquina de estados solo ve estas formas.
from datetime import date
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from zona_pedidos.errors import BillingValidationError


class _GatewayModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GatewayCustomer(_GatewayModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    cpf_cnpj: Optional[str] = Field(default=None, alias="cpfCnpj")
    external_reference: Optional[str] = Field(default=None, alias="externalReference")


class GatewaySubscription(_GatewayModel):
    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    cycle: Optional[str] = None
    value: Optional[float] = None
    billing_type: Optional[str] = Field(default=None, alias="billingType")
    next_due_date: Optional[date] = Field(default=None, alias="nextDueDate")
    external_reference: Optional[str] = Field(default=None, alias="externalReference")

    @field_validator("status", "cycle")
    @classmethod
    def _upper(cls, v):
        return str(v).strip().upper() if v else None


class GatewayPayment(_GatewayModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    status: Optional[str] = None
    value: Optional[float] = None
    net_value: Optional[float] = Field(default=None, alias="netValue")
    billing_type: Optional[str] = Field(default=None, alias="billingType")
    due_date: Optional[date] = Field(default=None, alias="dueDate")
    payment_date: Optional[date] = Field(default=None, alias="paymentDate")
    invoice_url: Optional[str] = Field(default=None, alias="invoiceUrl")
    external_reference: Optional[str] = Field(default=None, alias="externalReference")


class GatewayPage(_GatewayModel):
    data: List[dict] = Field(default_factory=list)
    has_more: bool = Field(default=False, alias="hasMore")
    total_count: Optional[int] = Field(default=None, alias="totalCount")
    limit: Optional[int] = None
    offset: Optional[int] = None


# =========================
# Webhook: variantes
# =========================
class _WebhookBase(_GatewayModel):
    id: Optional[str] = None
    event: str
    date_created: Optional[str] = Field(default=None, alias="dateCreated")

    @field_validator("id", mode="before")
    @classmethod
    def _id_str(cls, v):
        return str(v) if v is not None else None

    @property
    def customer_id(self) -> Optional[str]:
        return None

    @property
    def subscription_id(self) -> Optional[str]:
        return None

    @property
    def external_reference(self) -> Optional[str]:
        return None


class PaymentEvent(_WebhookBase):
    payment: GatewayPayment

    @property
    def customer_id(self):
        return self.payment.customer

    @property
    def subscription_id(self):
        return self.payment.subscription

    @property
    def external_reference(self):
        return self.payment.external_reference


class SubscriptionEvent(_WebhookBase):
    subscription: GatewaySubscription

    @property
    def customer_id(self):
        return self.subscription.customer

    @property
    def subscription_id(self):
        return self.subscription.id

    @property
    def external_reference(self):
        return self.subscription.external_reference


class UnrecognizedEvent(_WebhookBase):
    pass


WebhookEvent = Union[PaymentEvent, SubscriptionEvent, UnrecognizedEvent]


def webhook_event_name(body) -> str:
    """Nombre del evento normalizado. Sin `event` string no hay nada que registrar."""
    if not isinstance(body, dict) or not isinstance(body.get("event"), str) or not body["event"].strip():
        raise BillingValidationError("Payload de webhook inválido.", code="BAD_JSON")
    return body["event"].strip().upper()


def parse_webhook_event(body) -> WebhookEvent:
    """
    dict crudo → variante tipada.
    Sin `event` → BAD_JSON; sub-objeto mal formado → MALFORMED_PAYLOAD
    (el evento ya quedó registrado, se marca IGNORED).
    """
    event = webhook_event_name(body)
    data = {**body, "event": event}
    try:
        if event.startswith("PAYMENT_") and isinstance(body.get("payment"), dict):
            return PaymentEvent.model_validate(data)
        if event.startswith("SUBSCRIPTION_") and isinstance(body.get("subscription"), dict):
            return SubscriptionEvent.model_validate(data)
        return UnrecognizedEvent.model_validate({"id": body.get("id"), "event": event})
    except ValidationError as e:
        raise BillingValidationError(
            "Payload de webhook inválido.",
            code="MALFORMED_PAYLOAD",
            detail=[list(err.get("loc") or ()) for err in e.errors()],
        )
