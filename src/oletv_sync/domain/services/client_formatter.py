"""Formatação e validação dos dados de cliente no formato exigido pela Olé TV."""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from ...core.logging import get_logger
from ...ports.interfaces import ClientDTO

log = get_logger()

_NON_DIGITS = re.compile(r"\D")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_DIA_VENCIMENTO = 10

@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    formatted: dict | None = None


def clean_document(doc: Any) -> str:
    """Apenas os dígitos de CPF/CNPJ, CEP ou telefone."""
    return _NON_DIGITS.sub("", str(doc or ""))

def person_type(doc_digits: str) -> str | None:
    """'F' para CPF (11 dígitos), 'J' para CNPJ (14), None caso contrário."""
    if len(doc_digits) == 11:
        return "F"
    if len(doc_digits) == 14:
        return "J"
    return None

def format_document(doc_digits: str, tipo: str) -> str:
    if tipo == "F":
        return f"{doc_digits[:3]}.{doc_digits[3:6]}.{doc_digits[6:9]}-{doc_digits[9:]}"
    return f"{doc_digits[:2]}.{doc_digits[2:5]}.{doc_digits[5:8]}/{doc_digits[8:12]}-{doc_digits[12:]}"

def format_date(value: str | None, today: date | None = None) -> str | None:
    """YYYY-MM-DD[...] → DD/MM/YYYY; None se inválida ou fora de 1900..ano atual."""
    m = _ISO_DATE.match(value or "")
    if not m:
        return None
    year, month, day = (int(g) for g in m.groups())
    try:
        date(year, month, day)
    except ValueError:
        return None
    if year < 1900 or year > (today or date.today()).year:
        return None
    return f"{day:02d}/{month:02d}/{year:04d}"

def clean_phone(phone: str | None) -> str | None:
    digits = _NON_DIGITS.sub("", phone or "")
    return digits if 10 <= len(digits) <= 11 else None


class ClientFormatter:
    """Valida dados internos e monta o formulário de /clientes/inserir."""

    def __init__(self, today: date | None = None):
        self.today = today

    def format_for_ole(self, dados: ClientDTO) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        doc = clean_document(dados.documento)
        tipo = person_type(doc)
        if not tipo:
            errors.append(f"Documento inválido: {dados.documento} (CPF com 11 ou CNPJ com 14 dígitos)")
        nome = (dados.nome or "").strip()
        if len(nome) < 3:
            errors.append("Nome é obrigatório e deve ter pelo menos 3 caracteres")
        nascimento = None
        if tipo == "F":
            if not dados.data_nascimento:
                errors.append("Data de nascimento é obrigatória para Pessoa Física")
            else:
                nascimento = format_date(dados.data_nascimento, self.today)
                if not nascimento:
                    errors.append(f"Data de nascimento inválida: {dados.data_nascimento}")
        if not dados.cep or not dados.endereco:
            warnings.append("Endereço incompleto (CEP e logradouro recomendados)")
        telefone = clean_phone(dados.telefone)
        if not telefone:
            warnings.append("Telefone não informado ou inválido")

        if errors:
            log.warning("client_format_invalid", documento=doc, errors=errors)
            return ValidationResult(valid=False, errors=errors, warnings=warnings)

        out: dict = {
            "nome": nome.upper(),
            "tipo_pessoa": tipo,
            "cpf_cnpj": format_document(doc, tipo),
            "dia_vencimento": dados.dia_vencimento or DEFAULT_DIA_VENCIMENTO,
            "endereco_cobranca": True,
        }
        if nascimento:
            out["data_nascimento"] = nascimento
        if tipo == "J":
            out["nome_fantasia"] = nome.upper()
        if dados.cep:
            out["endereco_cep"] = clean_document(dados.cep)[:8]
        if dados.endereco:
            logradouro = f"{dados.tipo_logradouro} {dados.endereco}" if dados.tipo_logradouro else dados.endereco
            out["endereco_logradouro"] = logradouro.strip()
        if dados.numero:
            out["endereco_numero"] = dados.numero
        if dados.complemento:
            out["endereco_complemento"] = dados.complemento
        if dados.bairro:
            out["endereco_bairro"] = dados.bairro
        if dados.cidade:
            out["endereco_cidade"] = dados.cidade
        if dados.estado:
            out["endereco_uf"] = dados.estado.upper()
        if telefone:
            out["telefone_ddd"] = [telefone[:2]]
            out["telefone_numero"] = [telefone[2:]]
        if dados.email and _EMAIL.match(dados.email.strip()):
            out["email"] = [dados.email.strip().lower()]
        return ValidationResult(valid=True, warnings=warnings, formatted=out)

    def can_sync(self, dados: ClientDTO) -> tuple[bool, str | None]:
        """Checagem mínima antes de enfileirar: documento, nome e nascimento (PF)."""
        if not dados.documento:
            return False, "Documento não informado"
        tipo = person_type(clean_document(dados.documento))
        if not tipo:
            return False, "Documento inválido (CPF ou CNPJ)"
        if len((dados.nome or "").strip()) < 3:
            return False, "Nome não informado ou muito curto"
        if tipo == "F" and not dados.data_nascimento:
            return False, "Data de nascimento obrigatória para Pessoa Física"
        return True, None
