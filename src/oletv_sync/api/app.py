"""API Flask: webhook do ERP, monitoramento da fila e disparo da importação."""
from __future__ import annotations
from functools import wraps
from flask import Flask, request, jsonify, g
from kink import di
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from ..core.di import bootstrap_di
from ..core.errors import SyncValidationError
from ..core.logging import bound_integration, set_trace_id, get_logger
from ..core.settings import Settings
from ..domain.services.orchestrator import Orchestrator
from ..ports.interfaces import WebhookEventDTO
from ..repo import integrations as integrations_repo
from ..repo import mirror
from ..repo.models import ACTIONS, STATUSES
from ..repo.queue_store import SyncQueueStore
from ..tasks.bulk_importer import BulkImporter, DONE, ERROR

log = get_logger()

MAX_PAGE_SIZE = 100

def require_integration(fn):
    """Resolve a integração pelo bearer token (webhook_token)."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        set_trace_id(request.headers.get("X-Trace-Id"))
        header = request.headers.get("Authorization", "")
        token = header[7:].strip() if header.lower().startswith("bearer ") else ""
        integ = integrations_repo.find_by_webhook_token(token)
        if integ is None:
            log.warning("auth_rejected", path=request.path)
            return jsonify({"error": "token inválido"}), 401
        if not integ.is_active:
            return jsonify({"error": "integração desativada"}), 403
        g.integration = integ
        with bound_integration(integ.id):
            return fn(*args, **kwargs)
    return wrapper


def create_app() -> Flask:
    """Cria o app; espera o container já inicializado (bootstrap_di)."""
    app = Flask(__name__)

    @app.get("/healthz")
    def healthz():
        """Health check básico."""
        return {"ok": True}

    @app.post("/webhook/erp")
    @require_integration
    def webhook_erp():
        """Recebe evento do ERP e decide os itens de fila."""
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return jsonify({"error": "corpo JSON inválido"}), 400
        try:
            event = WebhookEventDTO.model_validate(body)
        except ValidationError as e:
            return jsonify({"error": "payload inválido", "details": e.errors(include_url=False, include_context=False)}), 400
        integ = g.integration
        try:
            result = di[Orchestrator].handle_event(integ.id, event)
        except SyncValidationError as e:
            log.warning("webhook_rejected", integration_id=integ.id, error=str(e), details=e.details)
            return jsonify({"error": str(e), "details": e.details}), 422
        except SQLAlchemyError:
            log.error("webhook_db_unavailable", integration_id=integ.id, exc_info=True)
            return jsonify({"error": "armazenamento indisponível"}), 503
        log.info("webhook_in", integration_id=integ.id, event_type=event.event_type, result=result.action, queue_ids=result.queue_ids)
        return jsonify(result.model_dump(by_alias=True)), 202 if result.action == "queued" else 200

    @app.get("/queue/stats")
    @require_integration
    def queue_stats():
        return jsonify(di[SyncQueueStore].stats(g.integration.id))

    @app.get("/queue/items")
    @require_integration
    def queue_items():
        """Lista itens com filtros (status, action) e paginação (limit, offset)."""
        status = request.args.get("status") or None
        action = request.args.get("action") or None
        if status and status not in STATUSES:
            return jsonify({"error": f"status inválido: {status}"}), 400
        if action and action not in ACTIONS:
            return jsonify({"error": f"action inválida: {action}"}), 400
        limit = request.args.get("limit", 20, type=int)
        offset = request.args.get("offset", 0, type=int)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        offset = max(offset, 0)
        items, total = di[SyncQueueStore].list_items(g.integration.id, status=status, action=action, limit=limit, offset=offset)
        return jsonify({"items": [i.to_dict() for i in items], "total": total, "limit": limit, "offset": offset})

    @app.post("/queue/retry/<int:queue_id>")
    @require_integration
    def queue_retry(queue_id: int):
        store = di[SyncQueueStore]
        item = store.get(queue_id, g.integration.id)
        if item is None:
            return jsonify({"error": "item não encontrado"}), 404
        if not store.retry(queue_id, g.integration.id):
            return jsonify({"error": f"apenas itens FAILED podem ser reprocessados (status atual: {item.status})"}), 409
        return jsonify({"ok": True, "id": queue_id, "status": "PENDING"})

    @app.delete("/queue/<int:queue_id>")
    @require_integration
    def queue_delete(queue_id: int):
        store = di[SyncQueueStore]
        item = store.get(queue_id, g.integration.id)
        if item is None:
            return jsonify({"error": "item não encontrado"}), 404
        if not store.delete(queue_id, g.integration.id):
            return jsonify({"error": f"apenas itens PENDING podem ser removidos (status atual: {item.status})"}), 409
        return jsonify({"ok": True, "id": queue_id})

    @app.post("/sync/full")
    @require_integration
    def sync_full():
        """Importação completa síncrona da integração autenticada."""
        result = di[BulkImporter].run(g.integration.id)
        if result.success:
            code = 200
        elif result.state == ERROR:
            code = 502
        elif result.state != DONE:
            code = 409
        else:
            code = 500
        return jsonify(result.model_dump(by_alias=True)), code

    @app.get("/sync/stats")
    @require_integration
    def sync_stats():
        return jsonify(mirror.local_stats(g.integration.id))

    return app


def main() -> None:
    bootstrap_di()
    s = di[Settings]
    create_app().run(host=s.host, port=s.port, debug=s.flask_debug)
