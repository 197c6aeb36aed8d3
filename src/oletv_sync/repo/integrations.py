"""Repositório de integrações (somente leitura para o núcleo, exceto last_sync)."""
from __future__ import annotations
import hmac
from datetime import datetime
from kink import di
from sqlalchemy import select, update
from ..core.clock import utcnow
from .models import Integration

def list_active(session_factory=None) -> list[Integration]:
    """Integrações ativas, em ordem estável de id."""
    Session = session_factory or di["session_factory"]
    with Session() as s:
        return list(s.execute(select(Integration).where(Integration.is_active.is_(True)).order_by(Integration.id)).scalars().all())

def get(integration_id: str, session_factory=None) -> Integration | None:
    Session = session_factory or di["session_factory"]
    with Session() as s:
        return s.get(Integration, integration_id)

def find_by_webhook_token(token: str, session_factory=None) -> Integration | None:
    """Resolve a integração dona do bearer token (comparação em tempo constante)."""
    if not token:
        return None
    Session = session_factory or di["session_factory"]
    with Session() as s:
        row = s.execute(select(Integration).where(Integration.webhook_token == token)).scalars().first()
    if row and hmac.compare_digest(row.webhook_token, token):
        return row
    return None

def touch_last_sync(integration_id: str, when: datetime | None = None, session_factory=None) -> None:
    Session = session_factory or di["session_factory"]
    when = when or utcnow()
    with Session() as s, s.begin():
        s.execute(update(Integration).where(Integration.id == integration_id).values(last_sync=when, updated_at=when))
