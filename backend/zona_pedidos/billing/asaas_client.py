# backend/zona_pedidos/billing/asaas_client.py
# Cliente HTTP del gateway Asaas (API v3).
#   - Base: sandbox o producción según ASAAS_ENV (o ASAAS_BASE_URL)
#   - Auth: header `access_token`
#   - Cualquier respuesta no-2xx → UpstreamError con la descripción del proveedor
#   - Respuesta 2xx con forma inesperada → UpstreamError también
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from zona_pedidos.config import BillingConfig
from zona_pedidos.errors import UpstreamError
from zona_pedidos.billing.schemas import (
    GatewayCustomer,
    GatewayPage,
    GatewayPayment,
    GatewaySubscription,
)
from zona_pedidos.observability.events import log_event

PAGE_SIZE = 100

M = TypeVar("M", bound=BaseModel)


def _upstream_message(body: Any) -> str:
    if isinstance(body, dict):
        errors = body.get("errors") or []
        if errors and isinstance(errors[0], dict) and errors[0].get("description"):
            return str(errors[0]["description"])
        if body.get("message"):
            return str(body["message"])
    return "Erro Asaas"


class AsaasClient:
    def __init__(self, config: BillingConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    # =========================
    # Transporte
    # =========================
    def _request(self, method: str, path: str, *, params=None, json=None) -> Any:
        api_key = self.config.require("asaas_api_key")
        url = f"{self.config.asaas_base_url}{path}"
        try:
            r = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers={"Content-Type": "application/json", "access_token": api_key},
                timeout=self.config.http_timeout,
            )
        except requests.RequestException as e:
            log_event("asaas_transport_error", method=method, path=path, err=str(e))
            raise UpstreamError(f"Falha de comunicação com Asaas: {e}", path=path) from e

        try:
            body = r.json() if r.content else None
        except ValueError:
            body = {"raw": r.text}

        if r.status_code >= 400:
            log_event("asaas_http_error", method=method, path=path, status=r.status_code, body=body)
            raise UpstreamError(
                _upstream_message(body),
                upstream_status=r.status_code,
                path=path,
                body=body,
            )
        return body

    def _parse(self, model: Type[M], data: Any, path: str) -> M:
        try:
            return model.model_validate(data if data is not None else {})
        except ValidationError as e:
            fields = [".".join(str(p) for p in err.get("loc") or ()) for err in e.errors()]
            log_event("asaas_bad_response", path=path, model=model.__name__, fields=fields)
            raise UpstreamError(
                f"Resposta inesperada do Asaas ({', '.join(fields) or model.__name__})",
                path=path,
                body=data,
            ) from e

    # =========================
    # Customers
    # =========================
    def create_customer(self, *, name: str, email: Optional[str], cpf_cnpj: str,
                        phone: Optional[str] = None,
                        external_reference: Optional[str] = None) -> GatewayCustomer:
        payload = {
            "name": name,
            "email": email,
            "cpfCnpj": cpf_cnpj,
            "mobilePhone": phone or None,
            "externalReference": external_reference,
        }
        return self._parse(GatewayCustomer, self._request("POST", "/customers", json=payload), "/customers")

    def get_customer(self, customer_id: str) -> GatewayCustomer:
        path = f"/customers/{customer_id}"
        return self._parse(GatewayCustomer, self._request("GET", path), path)

    def update_customer(self, customer_id: str, **fields) -> GatewayCustomer:
        path = f"/customers/{customer_id}"
        payload = {}
        if "cpf_cnpj" in fields:
            payload["cpfCnpj"] = fields.pop("cpf_cnpj")
        payload.update(fields)
        return self._parse(GatewayCustomer, self._request("PUT", path, json=payload), path)

    def find_customer_by_email(self, email: str) -> Optional[GatewayCustomer]:
        body = self._request("GET", "/customers", params={"email": email, "limit": 1})
        page = self._parse(GatewayPage, body, "/customers")
        return self._parse(GatewayCustomer, page.data[0], "/customers") if page.data else None

    # =========================
    # Subscriptions
    # =========================
    def create_subscription(self, *, customer: str, billing_type: str, cycle: str, value: float,
                            next_due_date: str, description: str,
                            external_reference: Optional[str] = None) -> GatewaySubscription:
        payload = {
            "customer": customer,
            "billingType": billing_type,
            "cycle": cycle,
            "value": value,
            "nextDueDate": next_due_date,
            "description": description,
            "externalReference": external_reference,
        }
        return self._parse(
            GatewaySubscription, self._request("POST", "/subscriptions", json=payload), "/subscriptions"
        )

    def update_subscription(self, subscription_id: str, *, cycle: str, value: float) -> GatewaySubscription:
        # cambio en sitio (no cancela y recrea)
        path = f"/subscriptions/{subscription_id}"
        body = self._request("PUT", path, json={"cycle": cycle, "value": value, "updatePendingPayments": True})
        return self._parse(GatewaySubscription, body, path)

    def delete_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/subscriptions/{subscription_id}") or {}

    def list_subscriptions(self, customer: Optional[str] = None, *, status: Optional[str] = None,
                           limit: int = PAGE_SIZE, offset: int = 0) -> GatewayPage:
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if customer:
            params["customer"] = customer
        if status:
            params["status"] = status
        return self._parse(GatewayPage, self._request("GET", "/subscriptions", params=params), "/subscriptions")

    def iter_customer_subscriptions(self, customer: str) -> Iterator[GatewaySubscription]:
        offset = 0
        while True:
            page = self.list_subscriptions(customer, limit=PAGE_SIZE, offset=offset)
            for item in page.data:
                yield self._parse(GatewaySubscription, item, "/subscriptions")
            if not page.data or (len(page.data) < PAGE_SIZE and not page.has_more):
                break
            offset += PAGE_SIZE

    # =========================
    # Payments
    # =========================
    def list_payments(self, subscription: str, *, limit: int = 1) -> List[GatewayPayment]:
        """Pagos de la suscripción, más nuevo primero."""
        body = self._request(
            "GET", "/payments",
            params={"subscription": subscription, "limit": limit,
                    "sort": "createdAt", "order": "desc"},
        )
        page = self._parse(GatewayPage, body, "/payments")
        return [self._parse(GatewayPayment, p, "/payments") for p in page.data]
