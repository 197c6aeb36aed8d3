"""Relógio UTC naive, no mesmo formato gravado nas colunas TIMESTAMP(timezone=False)."""
from datetime import datetime, timezone

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
