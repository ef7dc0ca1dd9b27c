# backend/zona_pedidos/core/auth/identity.py
from dataclasses import dataclass
from typing import Optional

from flask_jwt_extended import get_jwt, get_jwt_identity

from zona_pedidos.errors import AuthenticationError, TenantLinkError
from zona_pedidos.repositories import billing_repository as repo


@dataclass(frozen=True)
class Caller:
    user_id: str
    email: Optional[str]
    tenant_id: str


def resolve_tenant_id(user_id: str) -> str:
    tenant_id = repo.tenant_id_for_user(user_id)
    if not tenant_id:
        raise TenantLinkError()
    return tenant_id


def current_caller() -> Caller:
    """
    Identidad del request actual. Usar SIEMPRE debajo de @jwt_required():
    el token ya fue verificado por flask_jwt_extended.
    """
    user_id = get_jwt_identity()
    if not user_id:
        raise AuthenticationError("Authorization Bearer token ausente")
    claims = get_jwt() or {}
    email = (claims.get("email") or "").strip().lower() or None
    return Caller(user_id=str(user_id), email=email, tenant_id=resolve_tenant_id(str(user_id)))
