"""Cliente HTTP da API Olé TV (https://api.oletv.net.br).

Toda chamada é POST com form fields `keyapi`, `login`, `pass` + parâmetros da
operação. Respostas são normalizadas em ProviderResult ou convertidas na
taxonomia de core.errors.
"""
from __future__ import annotations
import json
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable
import httpx
from kink import di
from ...core.crypto import Cipher
from ...core.errors import (
    CredentialsError, TransientProviderError, RateLimitedError,
    PermanentProviderError, ProviderAuthError,
)
from ...core.logging import get_logger
from ...core.settings import Settings
from ...ports.interfaces import ProviderResult
from ...repo import integrations as integrations_repo
from .rate_limit import GateRegistry, IntervalGate

log = get_logger()

_AUTH_HINTS = re.compile(r"keyapi|login|senha|credencia|autentica|n[ãa]o autorizado|unauthori", re.I)
_NOT_FOUND_HINTS = re.compile(r"n[ãa]o encontrad|not found|nenhum|inexistente", re.I)
_LIST_KEYS = ("dados", "data", "clientes", "contratos", "boletos", "planos", "bloqueios", "lista", "registros")


@dataclass(frozen=True)
class Credentials:
    keyapi: str
    login: str
    password: str = field(repr=False)


_cred_cache: dict[str, tuple[float, Credentials]] = {}
_cred_lock = threading.Lock()

def load_credentials(
    integration_id: str,
    *,
    ttl_s: float = 300,
    cipher: Cipher | None = None,
    session_factory=None,
    clock: Callable[[], float] = time.monotonic,
) -> Credentials:
    """Lê e descriptografa as credenciais da integração, com cache por processo."""
    now = clock()
    with _cred_lock:
        hit = _cred_cache.get(integration_id)
        if hit and hit[0] > now:
            return hit[1]
    integ = integrations_repo.get(integration_id, session_factory=session_factory)
    if integ is None:
        raise CredentialsError(f"integração não encontrada: {integration_id}")
    if not integ.is_active:
        raise CredentialsError(f"integração desativada: {integration_id}")
    cipher = cipher or di[Cipher]
    creds = Credentials(integ.ole_keyapi, integ.ole_login, cipher.decrypt(integ.ole_password))
    with _cred_lock:
        _cred_cache[integration_id] = (now + ttl_s, creds)
    return creds

def clear_credentials_cache(integration_id: str | None = None) -> None:
    with _cred_lock:
        if integration_id is None:
            _cred_cache.clear()
        else:
            _cred_cache.pop(integration_id, None)


def extract_records(data: Any) -> list[dict]:
    """Extrai a lista de registros de uma resposta de listagem/busca."""
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    if isinstance(data, dict):
        for key in _LIST_KEYS:
            value = data.get(key)
            if isinstance(value, list):
                return [r for r in value if isinstance(r, dict)]
            if isinstance(value, dict) and value.get("id") is not None:
                return [value]
        if data.get("id") is not None:
            return [data]
    return []

def extract_id(data: Any, *keys: str) -> str | None:
    """Primeiro id encontrado em `keys` (no corpo ou em `dados`/`data`)."""
    keys = keys or ("id",)
    candidates = [data]
    if isinstance(data, dict):
        candidates += [data.get(k) for k in ("dados", "data", "retorno")]
    for c in candidates:
        if isinstance(c, list) and c:
            c = c[0]
        if isinstance(c, dict):
            for k in keys:
                if c.get(k) not in (None, ""):
                    return str(c[k])
    return None

def _flag(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    return None

def _success_flag(body: Any) -> bool | None:
    if not isinstance(body, dict):
        return None
    for key in ("retorno_status", "success", "status"):
        if key in body:
            flag = _flag(body[key])
            if flag is not None:
                return flag
    return None

def _message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        for key in ("mensagem", "retorno_mensagem", "message", "error", "erro", "msg"):
            if body.get(key):
                return str(body[key])
    return fallback

def _form_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)

def _retry_after(header: str | None, default: float) -> float:
    if not header:
        return default
    try:
        return max(float(header), 0.0)
    except ValueError:
        return default


class OleTvClient:
    """Adapter para a API Olé TV de uma integração."""

    def __init__(
        self,
        integration_id: str,
        credentials: Credentials,
        *,
        settings: Settings | None = None,
        gate: IntervalGate | None = None,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.s = settings or di[Settings]
        self.integration_id = integration_id
        self.credentials = credentials
        self.gate = gate or di[GateRegistry].get(integration_id)
        self._owns_http = http is None
        self.http = http or httpx.Client(base_url=self.s.api_base_url, timeout=self.s.api_timeout_s)
        self.sleep = sleep

    @classmethod
    def from_integration(
        cls,
        integration_id: str,
        *,
        settings: Settings | None = None,
        gates: GateRegistry | None = None,
        http: httpx.Client | None = None,
        cipher: Cipher | None = None,
        session_factory=None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "OleTvClient":
        settings = settings or di[Settings]
        creds = load_credentials(
            integration_id,
            ttl_s=settings.credentials_cache_ttl_s,
            cipher=cipher,
            session_factory=session_factory,
        )
        gate = (gates or di[GateRegistry]).get(integration_id)
        return cls(integration_id, creds, settings=settings, gate=gate, http=http, sleep=sleep)

    # ---------- Transporte ----------
    def _form(self, params: dict | None) -> dict:
        data: dict[str, Any] = {
            "keyapi": self.credentials.keyapi,
            "login": self.credentials.login,
            "pass": self.credentials.password,
        }
        for k, v in (params or {}).items():
            if v is None:
                continue
            if isinstance(v, (list, tuple)):
                data[k] = [_form_value(x) for x in v if x is not None]
            else:
                data[k] = _form_value(v)
        return data

    def request(self, endpoint: str, params: dict | None = None, *, allow_not_found: bool = False) -> ProviderResult:
        """POST na API com gate, retentativa de 429 e classificação de erro."""
        form = self._form(params)
        retries = self.s.rate_limit_max_retries
        for attempt in range(retries + 1):
            self.gate.wait()
            started = time.monotonic()
            try:
                r = self.http.post(endpoint, data=form)
            except httpx.TimeoutException as e:
                log.warning("oletv_timeout", endpoint=endpoint, integration_id=self.integration_id)
                raise TransientProviderError(f"timeout em {endpoint}: {e}") from e
            except httpx.TransportError as e:
                log.warning("oletv_transport_error", endpoint=endpoint, integration_id=self.integration_id, error=str(e))
                raise TransientProviderError(f"falha de transporte em {endpoint}: {e}") from e
            duration_ms = int((time.monotonic() - started) * 1000)
            log.info("oletv_request", endpoint=endpoint, status=r.status_code, duration_ms=duration_ms,
                     integration_id=self.integration_id, attempt=attempt + 1)
            if r.status_code == 429:
                wait = _retry_after(r.headers.get("Retry-After"), self.s.rate_limit_default_wait_s)
                if attempt < retries:
                    log.warning("oletv_rate_limited", endpoint=endpoint, wait_s=wait, attempt=attempt + 1)
                    self.sleep(wait)
                    continue
                raise RateLimitedError(f"rate limit persistente em {endpoint}", retry_after=wait)
            return self._normalize(endpoint, r, allow_not_found)
        raise RateLimitedError(f"rate limit persistente em {endpoint}")

    def _normalize(self, endpoint: str, r: httpx.Response, allow_not_found: bool) -> ProviderResult:
        text = r.text
        try:
            body = r.json() if text else None
        except json.JSONDecodeError:
            body = text
        status = r.status_code
        if status in (401, 403):
            raise ProviderAuthError(_message(body, f"credenciais recusadas em {endpoint}"), status, text)
        if status >= 500:
            raise TransientProviderError(f"erro {status} em {endpoint}", status, text)
        if status == 404 and allow_not_found:
            return ProviderResult(ok=False, data=body, status_code=status, message="não encontrado")
        if status >= 400:
            raise PermanentProviderError(_message(body, f"erro {status} em {endpoint}"), status, text)
        if _success_flag(body) is False:
            msg = _message(body, f"operação recusada em {endpoint}")
            if allow_not_found and _NOT_FOUND_HINTS.search(msg):
                return ProviderResult(ok=False, data=body, status_code=status, message=msg)
            if _AUTH_HINTS.search(msg):
                raise ProviderAuthError(msg, status, text)
            raise PermanentProviderError(msg, status, text)
        return ProviderResult(ok=True, data=body, status_code=status)

    def close(self) -> None:
        """Fecha o pool HTTP quando foi criado aqui; um `http` injetado é de quem o passou."""
        if self._owns_http:
            self.http.close()

    def __enter__(self) -> "OleTvClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------- Clientes ----------
    def listar_clientes(self, pagina: int | None = None, limite: int | None = None) -> ProviderResult:
        return self.request("/clientes/listar", {"pagina": pagina, "limite": limite})

    def buscar_cliente_por_documento(self, documento: str) -> ProviderResult:
        """Busca por CPF/CNPJ (apenas dígitos); ok=False quando não existe."""
        doc = re.sub(r"\D", "", documento or "")
        return self.request(f"/clientes/buscacpfcnpj/{doc}", allow_not_found=True)

    def buscar_dados_cliente(self, id_cliente: str) -> ProviderResult:
        return self.request(f"/clientes/buscadados/{id_cliente}", allow_not_found=True)

    def inserir_cliente(self, dados: dict) -> ProviderResult:
        return self.request("/clientes/inserir", dados)

    def alterar_cliente(self, id_cliente: str, dados: dict) -> ProviderResult:
        return self.request(f"/clientes/alterar/{id_cliente}", dados)

    # ---------- Contratos ----------
    def listar_planos(self) -> ProviderResult:
        return self.request("/planos")

    def listar_contratos(self, id_cliente: str) -> ProviderResult:
        return self.request(f"/contratos/listar/{id_cliente}", allow_not_found=True)

    def inserir_contrato(self, dados: dict) -> ProviderResult:
        """dados: id_cliente, id_plano_principal, id_plano_adicional[], id_modelo[], mac[], email_usuario."""
        if not dados.get("id_cliente") or not dados.get("id_plano_principal"):
            raise PermanentProviderError("id_cliente e id_plano_principal são obrigatórios")
        return self.request("/contratos/inserir", dados)

    def cancelar_contrato(self, id_contrato: str, motivo: str | None = None) -> ProviderResult:
        return self.request(f"/contratos/cancelar/{id_contrato}", {"motivo": motivo})

    def bloquear_contrato(self, id_contrato: str, motivo_suspensao: int, data_encerramento: str | None = None) -> ProviderResult:
        """motivo_suspensao: 1 = inadimplência, 2 = pedido do cliente."""
        if motivo_suspensao not in (1, 2):
            raise ValueError("motivo_suspensao deve ser 1 ou 2")
        return self.request(
            f"/contratos/bloqueio/{id_contrato}",
            {"motivo_suspensao": motivo_suspensao, "data_encerramento": data_encerramento},
        )

    def desbloquear_contrato(self, id_contrato: str, id_bloqueio: str) -> ProviderResult:
        return self.request(f"/contratos/desbloqueio/{id_contrato}/{id_bloqueio}")

    def listar_bloqueios(self, id_contrato: str, apenas_ativos: bool = True) -> ProviderResult:
        return self.request(f"/contratos/listarbloqueios/{id_contrato}/{_form_value(apenas_ativos)}", allow_not_found=True)

    # ---------- Boletos ----------
    def listar_boletos(self, id_cliente: str) -> ProviderResult:
        return self.request(f"/boletos/listar/{id_cliente}", allow_not_found=True)

    def buscar_boletos_por_documento(self, documento: str, status: str | None = None) -> ProviderResult:
        if status not in (None, "Aberto", "Pago"):
            raise ValueError("status deve ser 'Aberto' ou 'Pago'")
        doc = re.sub(r"\D", "", documento or "")
        endpoint = f"/boletos/buscacpfcnpj/{doc}/{status}" if status else f"/boletos/buscacpfcnpj/{doc}"
        return self.request(endpoint, allow_not_found=True)

    def buscar_boletos_por_contrato(self, id_contrato: str) -> ProviderResult:
        return self.request(f"/boletos/buscacontrato/{id_contrato}", allow_not_found=True)

    # ---------- Utilitários ----------
    def testar_conexao(self) -> ProviderResult:
        """Valida credenciais listando clientes (1 registro)."""
        try:
            res = self.listar_clientes(pagina=1, limite=1)
        except (ProviderAuthError, PermanentProviderError, TransientProviderError) as e:
            log.warning("oletv_connection_test_failed", integration_id=self.integration_id, error=str(e))
            return ProviderResult(ok=False, data={"valid": False}, status_code=getattr(e, "status_code", 0), message=str(e))
        return ProviderResult(ok=True, data={"valid": True}, status_code=res.status_code)
