"""Espelho local da Olé TV: clientes, contratos e boletos.

Escrito pelo importador em lote (sobrescrita por registro) e, de forma
otimista, pelo orquestrador após sucesso confirmado no provedor.
"""
from __future__ import annotations
import re
from decimal import Decimal, InvalidOperation
from typing import Any
from kink import di
from sqlalchemy import select, update, func
from ..core.clock import utcnow
from ..domain.services.client_formatter import clean_document
from .models import OleCliente, OleContrato, OleBoleto, Integration, ATIVO, INATIVO, CANCELADO

_DATE_BR = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")
_DATE_ISO = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


class MalformedRecord(ValueError):
    """Registro do provedor sem os campos mínimos para o espelho."""


# ---------- Normalização ----------
def derive_status(raw: Any) -> str:
    """Mapeia o status textual da Olé para ativo|inativo|cancelado."""
    txt = str(raw or "").strip().lower()
    if not txt:
        return ATIVO
    if "cancel" in txt:
        return CANCELADO
    if any(k in txt for k in ("inativ", "bloque", "suspens", "desativ")):
        return INATIVO
    return ATIVO

def _first(raw: dict, *keys: str) -> Any:
    for k in keys:
        v = raw.get(k)
        if v not in (None, ""):
            return v
    return None

def _decimal(v: Any) -> Decimal | None:
    if v in (None, ""):
        return None
    try:
        return Decimal(str(v).replace(",", "."))
    except InvalidOperation as e:
        raise MalformedRecord(f"valor inválido: {v!r}") from e

def _date(v: Any) -> str | None:
    """Aceita DD/MM/YYYY ou YYYY-MM-DD[...] e devolve YYYY-MM-DD."""
    if v in (None, ""):
        return None
    s = str(v).strip()
    m = _DATE_BR.match(s)
    if m:
        return f"{m.group(3)}-{m.group(2)}-{m.group(1)}"
    m = _DATE_ISO.match(s)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"
    raise MalformedRecord(f"data inválida: {v!r}")

def normalize_cliente(raw: dict) -> dict:
    if not isinstance(raw, dict):
        raise MalformedRecord("cliente não é um objeto")
    ole_id = _first(raw, "id", "id_cliente", "idCliente")
    if ole_id is None:
        raise MalformedRecord("cliente sem id")
    documento = clean_document(_first(raw, "cpf_cnpj", "documento", "cpf", "cnpj"))
    if len(documento) not in (11, 14):
        raise MalformedRecord(f"cliente {ole_id} sem documento válido")
    return {
        "ole_cliente_id": str(ole_id),
        "documento": documento,
        "nome": str(_first(raw, "nome", "razao_social") or ""),
        "email": _first(raw, "email"),
        "telefone": _first(raw, "telefone", "celular"),
        "cidade": _first(raw, "cidade", "endereco_cidade"),
        "estado": _first(raw, "estado", "uf", "endereco_uf"),
        "cep": _first(raw, "cep", "endereco_cep"),
        "status": derive_status(_first(raw, "status", "situacao")),
        "raw_data": raw,
    }

def normalize_contrato(raw: dict, ole_cliente_id: str) -> dict:
    if not isinstance(raw, dict):
        raise MalformedRecord("contrato não é um objeto")
    ole_id = _first(raw, "id", "id_contrato", "idContrato", "contrato")
    if ole_id is None:
        raise MalformedRecord("contrato sem id")
    dia = _first(raw, "dia_vencimento")
    try:
        dia = int(dia) if dia is not None else None
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"dia_vencimento inválido: {dia!r}") from e
    plano_id = _first(raw, "id_plano_principal", "id_plano")
    return {
        "ole_contrato_id": str(ole_id),
        "ole_cliente_id": str(_first(raw, "id_cliente") or ole_cliente_id),
        "plano_id": str(plano_id) if plano_id is not None else None,
        "plano": _first(raw, "plano", "nome_plano"),
        "valor": _decimal(_first(raw, "valor")),
        "dia_vencimento": dia,
        "status": derive_status(_first(raw, "status", "situacao")),
        "raw_data": raw,
    }

def normalize_boleto(raw: dict, ole_cliente_id: str) -> dict:
    if not isinstance(raw, dict):
        raise MalformedRecord("boleto não é um objeto")
    ole_id = _first(raw, "id", "id_boleto", "idBoleto", "nosso_numero")
    if ole_id is None:
        raise MalformedRecord("boleto sem id")
    contrato = _first(raw, "id_contrato")
    return {
        "ole_boleto_id": str(ole_id),
        "ole_cliente_id": ole_cliente_id,
        "ole_contrato_id": str(contrato) if contrato is not None else None,
        "valor": _decimal(_first(raw, "valor")) or Decimal("0"),
        "data_vencimento": _date(_first(raw, "data_vencimento", "vencimento")),
        "data_pagamento": _date(_first(raw, "data_pagamento")),
        "situacao": str(_first(raw, "status", "situacao") or "Aberto"),
        "linha_digitavel": _first(raw, "linha_digitavel"),
        "raw_data": raw,
    }


# ---------- Escrita ----------
def _upsert(model, key_field: str, integration_id: str, data: dict, session_factory=None):
    Session = session_factory or di["session_factory"]
    now = utcnow()
    with Session() as s, s.begin():
        key_col = getattr(model, key_field)
        row = s.execute(
            select(model).where(model.integration_id == integration_id, key_col == data[key_field])
        ).scalars().first()
        if row is None:
            row = model(integration_id=integration_id, **data)
            s.add(row)
        else:
            for k, v in data.items():
                setattr(row, k, v)
        row.last_sync_at = now
        s.flush()
    return row

def upsert_cliente(integration_id: str, data: dict, session_factory=None) -> OleCliente:
    return _upsert(OleCliente, "ole_cliente_id", integration_id, data, session_factory)

def upsert_contrato(integration_id: str, data: dict, session_factory=None) -> OleContrato:
    return _upsert(OleContrato, "ole_contrato_id", integration_id, data, session_factory)

def upsert_boleto(integration_id: str, data: dict, session_factory=None) -> OleBoleto:
    return _upsert(OleBoleto, "ole_boleto_id", integration_id, data, session_factory)

def set_contrato_status(integration_id: str, ole_contrato_id: str, status: str, session_factory=None) -> None:
    Session = session_factory or di["session_factory"]
    with Session() as s, s.begin():
        s.execute(
            update(OleContrato)
            .where(OleContrato.integration_id == integration_id, OleContrato.ole_contrato_id == ole_contrato_id)
            .values(status=status, last_sync_at=utcnow())
        )


# ---------- Leitura ----------
def find_cliente_by_documento(integration_id: str, documento: str, session_factory=None) -> OleCliente | None:
    Session = session_factory or di["session_factory"]
    with Session() as s:
        return s.execute(
            select(OleCliente)
            .where(OleCliente.integration_id == integration_id, OleCliente.documento == clean_document(documento))
            .order_by(OleCliente.last_sync_at.desc())
        ).scalars().first()

def active_contratos(integration_id: str, ole_cliente_id: str, session_factory=None) -> list[OleContrato]:
    Session = session_factory or di["session_factory"]
    with Session() as s:
        return list(s.execute(
            select(OleContrato)
            .where(
                OleContrato.integration_id == integration_id,
                OleContrato.ole_cliente_id == ole_cliente_id,
                OleContrato.status == ATIVO,
            )
            .order_by(OleContrato.id)
        ).scalars().all())

def list_cliente_refs(integration_id: str, session_factory=None) -> list[tuple[str, str]]:
    """(ole_cliente_id, documento) de todos os clientes espelhados."""
    Session = session_factory or di["session_factory"]
    with Session() as s:
        return [tuple(r) for r in s.execute(
            select(OleCliente.ole_cliente_id, OleCliente.documento)
            .where(OleCliente.integration_id == integration_id)
            .order_by(OleCliente.id)
        ).all()]

def local_stats(integration_id: str, session_factory=None) -> dict:
    Session = session_factory or di["session_factory"]
    with Session() as s:
        def count(model):
            return s.execute(
                select(func.count()).select_from(model).where(model.integration_id == integration_id)
            ).scalar_one()
        integ = s.get(Integration, integration_id)
        return {
            "clientes": count(OleCliente),
            "contratos": count(OleContrato),
            "boletos": count(OleBoleto),
            "lastSync": integ.last_sync.isoformat() if integ and integ.last_sync else None,
        }
