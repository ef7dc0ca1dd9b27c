# backend/zona_pedidos/errors.py
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Error base: mensaje para el usuario + código estable + status HTTP."""

    code = "BILLING_ERROR"
    http_status = 400
    default_message = "Erro de billing."

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None,
                 http_status: Optional[int] = None, detail: Any = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        if http_status:
            self.http_status = http_status
        self.detail = detail
        super().__init__(self.message)

    def to_json(self) -> Dict[str, Any]:
        out = {"ok": False, "code": self.code, "message": self.message}
        if self.detail is not None:
            out["detail"] = self.detail
        return out


class ConfigurationError(BillingError):
    code = "CONFIG_MISSING"
    http_status = 500

    def __init__(self, key: str, message: Optional[str] = None):
        self.key = key
        super().__init__(message or f"{key} ausente no env", detail={"key": key})


class AuthenticationError(BillingError):
    code = "UNAUTHENTICATED"
    http_status = 401
    default_message = "Token inválido ou sessão expirada"


class OperatorAuthError(BillingError):
    code = "UNAUTHORIZED"
    http_status = 401
    default_message = "Token de operador inválido."


class TenantLinkError(BillingError):
    code = "TENANT_NOT_LINKED"
    http_status = 400
    default_message = "Usuário sem tenant vinculado (profiles.tenant_id)"


class TenantNotFoundError(BillingError):
    code = "TENANT_NOT_FOUND"
    http_status = 404
    default_message = "Tenant não encontrado"


class BillingValidationError(BillingError):
    code = "VALIDATION_ERROR"
    http_status = 400


class CouponNotAllowedError(BillingError):
    code = "COUPON_NOT_ALLOWED"
    http_status = 403
    default_message = "Este cupom não é permitido para este e-mail."


class UpstreamError(BillingError):
    """Falla del gateway de pagos. Lleva la descripción del proveedor."""

    code = "UPSTREAM_ERROR"
    http_status = 502
    default_message = "Erro Asaas"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None,
                 path: Optional[str] = None, body: Any = None):
        self.upstream_status = upstream_status
        self.path = path
        self.body = body
        super().__init__(
            message,
            detail={"upstream_status": upstream_status, "path": path},
        )
