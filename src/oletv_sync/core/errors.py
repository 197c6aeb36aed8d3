"""Taxonomia de erros da sincronização.

- SyncValidationError: dado inválido ou não mapeável; nunca entra na fila.
- TransientProviderError: rede, timeout, 5xx, 429 esgotado; volta para a fila com backoff.
- PermanentProviderError: erro de negócio do provedor; vai direto para FAILED.
- ProviderAuthError: credencial recusada; aborta a importação em lote.
"""
from __future__ import annotations


class SyncError(Exception):
    """Base de todos os erros da integração."""


class SyncValidationError(SyncError):
    """Evento ou dado rejeitado antes de chegar à fila."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class CredentialsError(SyncError):
    """Integração inexistente, desativada ou com senha ilegível."""


class ProviderError(SyncError):
    """Falha em chamada à API da Olé TV."""
    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class TransientProviderError(ProviderError):
    """Falha que tende a se resolver sozinha (timeout, 5xx, rate-limit)."""


class RateLimitedError(TransientProviderError):
    """429 persistente após as retentativas locais."""
    def __init__(self, message: str, retry_after: float = 0):
        super().__init__(message, 429)
        self.retry_after = retry_after


class PermanentProviderError(ProviderError):
    """Erro de negócio (ex: documento já cadastrado, contrato inexistente)."""


class ProviderAuthError(ProviderError):
    """Credenciais recusadas pelo provedor (401/403 ou mensagem de login)."""


def is_permanent(exc: BaseException) -> bool:
    """True quando retentar não muda o resultado."""
    return isinstance(exc, (SyncValidationError, PermanentProviderError))
