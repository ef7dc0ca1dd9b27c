# backend/zona_pedidos/cli.py
import click

from zona_pedidos.extensions import billing_config, gateway
from zona_pedidos.billing.service import sync_subscriptions
from zona_pedidos.billing.webhooks import retry_failed_events


def register_cli(app):
    @app.cli.command("sync-subscriptions")
    def sync_subscriptions_cmd():
        """Espeja las suscripciones de Asaas de todos los tenants con customer."""
        with app.app_context():
            out = sync_subscriptions(gateway=gateway())
            click.echo(f"SYNC total={out['total']} updated={out['updated']} errors={len(out['errors'])}")
            for err in out["errors"]:
                click.echo(f"  - tenant={err['tenantId']} customer={err['customerId']}: {err['error']}")

    @app.cli.command("retry-billing-events")
    @click.option("--limit", type=int, default=100, help="Máximo de eventos FAILED a reintentar.")
    def retry_billing_events_cmd(limit):
        """Reprocesa webhooks FAILED con intentos < WEBHOOK_MAX_ATTEMPTS."""
        with app.app_context():
            out = retry_failed_events(billing_config(), limit=limit)
            click.echo(
                f"RETRY retried={out['retried']} processed={out['processed']} "
                f"ignored={out['ignored']} failed={out['failed']}"
            )
