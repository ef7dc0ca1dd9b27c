# backend/zona_pedidos/observability/events.py
import json
import logging

from flask import current_app, has_app_context

_log = logging.getLogger("zona_pedidos.billing")


def log_event(event: str, level: int = logging.INFO, **fields):
    """Log estructurado de una línea (JSON) por el logger de Flask."""
    line = json.dumps({"event": event, **fields}, default=str)
    if has_app_context():
        current_app.logger.log(level, line)
    else:
        _log.log(level, line)
