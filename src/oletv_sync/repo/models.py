"""Modelos SQLAlchemy: integrações, fila de sincronização, mapeamento de planos e espelho local da Olé."""
from __future__ import annotations
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, JSON, UniqueConstraint, Index, Boolean, Numeric, Text, TIMESTAMP, ForeignKey
from datetime import datetime
from decimal import Decimal
from ..core.clock import utcnow

class Base(DeclarativeBase):
    """Base declarativa."""
    pass

# Ações e status da fila
CREATE_CLIENT = "CREATE_CLIENT"
UPDATE_CLIENT = "UPDATE_CLIENT"
CREATE_CONTRACT = "CREATE_CONTRACT"
CANCEL_CONTRACT = "CANCEL_CONTRACT"
ACTIONS = (CREATE_CLIENT, UPDATE_CLIENT, CREATE_CONTRACT, CANCEL_CONTRACT)

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SUCCESS = "SUCCESS"
FAILED = "FAILED"
STATUSES = (PENDING, PROCESSING, SUCCESS, FAILED)

# Status derivado do espelho
ATIVO = "ativo"
INATIVO = "inativo"
CANCELADO = "cancelado"

class Integration(Base):
    __tablename__ = "integrations"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    ole_keyapi: Mapped[str] = mapped_column(String(255))
    ole_login: Mapped[str] = mapped_column(String(255))
    ole_password: Mapped[str] = mapped_column(Text)  # cifrado (core.crypto)
    webhook_token: Mapped[str] = mapped_column(String(128), unique=True)
    last_sync: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow)

class SyncQueueItem(Base):
    __tablename__ = "sync_queue"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_id: Mapped[str] = mapped_column(String(36), ForeignKey("integrations.id"))
    action: Mapped[str] = mapped_column(String(32))
    payload: Mapped[dict] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(16), default=PENDING)  # PENDING|PROCESSING|SUCCESS|FAILED
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject_key: Mapped[str | None] = mapped_column(String(32), nullable=True)
    scheduled_for: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    __table_args__ = (
        Index("ix_sync_queue_claim", "integration_id", "status", "scheduled_for", "created_at"),
        Index("ix_sync_queue_subject", "integration_id", "subject_key"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "integrationId": self.integration_id,
            "action": self.action,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "lastError": self.last_error,
            "subjectKey": self.subject_key,
            "scheduledFor": _iso(self.scheduled_for),
            "processedAt": _iso(self.processed_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

class ProductPlanMapping(Base):
    __tablename__ = "product_plan_mappings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_id: Mapped[str] = mapped_column(String(36), ForeignKey("integrations.id"))
    integration_code: Mapped[str] = mapped_column(String(64))
    ole_plan_id: Mapped[str] = mapped_column(String(32))
    ole_plan_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_main_plan: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    __table_args__ = (
        UniqueConstraint("integration_id", "integration_code", name="uq_mapping_code"),
    )

class OleCliente(Base):
    __tablename__ = "ole_clientes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_id: Mapped[str] = mapped_column(String(36), ForeignKey("integrations.id"))
    ole_cliente_id: Mapped[str] = mapped_column(String(32))
    documento: Mapped[str] = mapped_column(String(14))  # apenas dígitos
    nome: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    telefone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cidade: Mapped[str | None] = mapped_column(String(120), nullable=True)
    estado: Mapped[str | None] = mapped_column(String(2), nullable=True)
    cep: Mapped[str | None] = mapped_column(String(9), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=ATIVO)  # ativo|inativo|cancelado
    raw_data: Mapped[dict] = mapped_column(JSON, default=dict)
    last_sync_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    __table_args__ = (
        UniqueConstraint("integration_id", "ole_cliente_id", name="uq_ole_cliente"),
        Index("ix_ole_clientes_documento", "integration_id", "documento"),
    )

class OleContrato(Base):
    __tablename__ = "ole_contratos"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_id: Mapped[str] = mapped_column(String(36), ForeignKey("integrations.id"))
    ole_contrato_id: Mapped[str] = mapped_column(String(32))
    ole_cliente_id: Mapped[str] = mapped_column(String(32))
    plano_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    plano: Mapped[str | None] = mapped_column(String(120), nullable=True)
    valor: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    dia_vencimento: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=ATIVO)
    raw_data: Mapped[dict] = mapped_column(JSON, default=dict)
    last_sync_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    __table_args__ = (
        UniqueConstraint("integration_id", "ole_contrato_id", name="uq_ole_contrato"),
        Index("ix_ole_contratos_cliente", "integration_id", "ole_cliente_id"),
    )

class OleBoleto(Base):
    __tablename__ = "ole_boletos"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_id: Mapped[str] = mapped_column(String(36), ForeignKey("integrations.id"))
    ole_boleto_id: Mapped[str] = mapped_column(String(32))
    ole_cliente_id: Mapped[str] = mapped_column(String(32))
    ole_contrato_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    valor: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    data_vencimento: Mapped[str | None] = mapped_column(String(10), nullable=True)  # YYYY-MM-DD
    data_pagamento: Mapped[str | None] = mapped_column(String(10), nullable=True)
    situacao: Mapped[str] = mapped_column(String(32), default="Aberto")
    linha_digitavel: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSON, default=dict)
    last_sync_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    __table_args__ = (
        UniqueConstraint("integration_id", "ole_boleto_id", name="uq_ole_boleto"),
    )

def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None
