"""Infra de logging JSON usando structlog, com trace_id e integration_id contextuais."""
from __future__ import annotations
import logging
import structlog
import sys
from contextlib import contextmanager
from uuid import uuid4
from contextvars import ContextVar

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="-")
integration_ctx: ContextVar[str | None] = ContextVar("integration_id", default=None)

_configured = False

def set_trace_id(value: str | None = None) -> str:
    """Define trace_id no contexto atual e retorna o valor definido."""
    tid = value or uuid4().hex
    trace_id_ctx.set(tid)
    return tid

@contextmanager
def bound_integration(integration_id: str):
    """Anexa integration_id a todo evento emitido dentro do bloco (inclusive pelos repositórios)."""
    token = integration_ctx.set(integration_id)
    try:
        yield
    finally:
        integration_ctx.reset(token)

def _add_context(_, __, event: dict) -> dict:
    event["trace_id"] = trace_id_ctx.get()
    iid = integration_ctx.get()
    if iid is not None:
        event.setdefault("integration_id", iid)
    return event

def configure_logging(level: str = "INFO") -> None:
    """(Re)configura o structlog com o nível informado (ex: "DEBUG")."""
    global _configured
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            _add_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )
    _configured = True

def get_logger() -> structlog.stdlib.BoundLogger:
    if not _configured:
        configure_logging()
    return structlog.get_logger()
