from prometheus_client import Counter, generate_latest, CONTENT_TYPE_LATEST

WEBHOOK_RCVD    = Counter("billing_webhook_received_total", "Webhooks Asaas recibidos")
WEBHOOK_IGNORED = Counter("billing_webhook_ignored_total", "Webhooks Asaas sin efecto (sin customer/tenant/evento)")
WEBHOOK_ERR     = Counter("billing_webhook_error_total", "Errores procesando webhooks Asaas")
SYNC_UPD        = Counter("billing_sync_updated_total", "Suscripciones espejadas por sync")
SYNC_ERR        = Counter("billing_sync_errors_total", "Tenants con error en sync")
SUBS_CREATED    = Counter("billing_subscriptions_created_total", "Suscripciones creadas en Asaas")
CANCEL_UPSTREAM_ERR = Counter("billing_cancel_upstream_error_total", "Cancelaciones con fallo en Asaas (se siguió local)")

def metrics_http_response():
    return generate_latest(), 200, {"Content-Type": CONTENT_TYPE_LATEST}
