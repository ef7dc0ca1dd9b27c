# backend/zona_pedidos/billing/timeutils.py
from datetime import date, datetime, time, timezone
from typing import Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normaliza cualquier datetime a 'aware UTC'. SQLite devuelve naive: se asume UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def date_to_utc(d: Optional[date]) -> Optional[datetime]:
    """Fecha de vencimiento (YYYY-MM-DD) → medianoche UTC."""
    if d is None:
        return None
    if isinstance(d, datetime):
        return to_aware_utc(d)
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def parse_gateway_time(v) -> Optional[datetime]:
    """
    Acepta lo que manda Asaas:
      - 'YYYY-MM-DD'
      - 'YYYY-MM-DD HH:MM:SS' (dateCreated, hora local del gateway, se trata como UTC)
      - ISO-8601 con o sin 'Z'
    Devuelve None si no se puede interpretar.
    """
    if v is None:
        return None
    if isinstance(v, datetime):
        return to_aware_utc(v)
    if isinstance(v, date):
        return date_to_utc(v)
    s = str(v).strip()
    if not s:
        return None
    try:
        if len(s) == 10:
            return date_to_utc(date.fromisoformat(s))
        return to_aware_utc(datetime.fromisoformat(s.replace("Z", "+00:00")))
    except ValueError:
        return None


def iso(dt: Optional[datetime]) -> Optional[str]:
    dt = to_aware_utc(dt)
    return dt.isoformat() if dt else None
