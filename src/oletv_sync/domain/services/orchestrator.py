"""Orquestrador: decide quais itens de fila um evento do ERP gera e executa cada ação na Olé.

Decisão (handle_event), sempre validando tudo antes do primeiro enqueue:
    create, cliente ausente                    → CREATE_CLIENT + CREATE_CONTRACT
    create, cliente inativo/cancelado s/ ativo → UPDATE_CLIENT (reativa) + CREATE_CONTRACT
    create, cliente ativo sem contrato ativo   → CREATE_CONTRACT
    create, contrato ativo                     → nada (entrega duplicada)
    update, cliente ausente                    → como create
    update, cliente presente, dados iguais     → nada (sem alteração)
    update, cliente presente                   → UPDATE_CLIENT
    cancel, contratos ativos                   → CANCEL_CONTRACT por contrato
    cancel, sem contrato ativo                 → nada

Execução (execute) é idempotente por ação: reexecutar um item já aplicado
no provedor não duplica cliente nem contrato.
"""
from __future__ import annotations
from typing import Callable
from kink import di
from ...connectors.oletv.client import OleTvClient, extract_records, extract_id
from ...core.errors import SyncValidationError, TransientProviderError
from ...core.logging import get_logger
from ...ports.interfaces import WebhookEventDTO, OrchestrationResult, ProviderResult, ProviderPort
from ...repo import mirror
from ...repo.models import (
    SyncQueueItem, CREATE_CLIENT, UPDATE_CLIENT, CREATE_CONTRACT, CANCEL_CONTRACT,
    ATIVO, CANCELADO,
)
from ...repo.queue_store import SyncQueueStore
from .client_formatter import ClientFormatter, clean_document
from .product_mapper import ProductMapper

log = get_logger()

CREATE, UPDATE, CANCEL = "create", "update", "cancel"
_EVENT_ALIASES = {
    "create": CREATE, "created": CREATE, "new": CREATE, "insert": CREATE,
    "update": UPDATE, "updated": UPDATE, "change": UPDATE,
    "cancel": CANCEL, "cancelled": CANCEL, "canceled": CANCEL, "cancellation": CANCEL,
}
DEFAULT_CANCEL_REASON = "Cancelamento via webhook"
CHANGE_FIELDS = ("nome", "email", "telefone", "endereco", "cidade", "estado", "cep")

def event_kind(event_type: str) -> str | None:
    """'create'|'update'|'cancel' para o eventType recebido (aceita prefixo, ex: 'client.created')."""
    key = (event_type or "").strip().lower()
    for sep in (".", ":", "/"):
        key = key.rsplit(sep, 1)[-1]
    return _EVENT_ALIASES.get(key)


class Orchestrator:
    """Motor de decisão e executor das ações da fila."""

    def __init__(
        self,
        store: SyncQueueStore | None = None,
        mapper: ProductMapper | None = None,
        formatter: ClientFormatter | None = None,
        client_factory: Callable[[str], ProviderPort] | None = None,
        session_factory=None,
    ):
        self.store = store or di[SyncQueueStore]
        self.mapper = mapper or di[ProductMapper]
        self.formatter = formatter or ClientFormatter()
        self.client_factory = client_factory or OleTvClient.from_integration
        self.Session = session_factory or di["session_factory"]

    # ================= Decisão =================
    def handle_event(self, integration_id: str, event: WebhookEventDTO) -> OrchestrationResult:
        kind = event_kind(event.event_type)
        if kind is None:
            raise SyncValidationError(f"eventType desconhecido: {event.event_type}", {"eventType": event.event_type})
        doc = clean_document(event.client.documento)
        cliente = mirror.find_cliente_by_documento(integration_id, doc, session_factory=self.Session)
        log.info("event_received", integration_id=integration_id, kind=kind, documento=doc, in_mirror=cliente is not None)

        if kind == CANCEL:
            return self._decide_cancel(integration_id, event, doc, cliente)
        if kind == UPDATE and cliente is not None:
            formatted = self._format(event)
            changed = changed_fields(cliente, formatted)
            if not changed:
                log.info("event_noop_unchanged", integration_id=integration_id, documento=doc)
                return OrchestrationResult(action="skipped", message="nenhuma alteração detectada")
            log.info("client_changes_detected", integration_id=integration_id, documento=doc, fields=changed)
            item = self.store.enqueue(
                integration_id, UPDATE_CLIENT,
                {"documento": doc, "ole_cliente_id": cliente.ole_cliente_id, "cliente": formatted},
                subject_key=doc,
            )
            return _queued([item])
        return self._decide_create(integration_id, event, doc, cliente)

    def _decide_create(self, integration_id: str, event: WebhookEventDTO, doc: str, cliente) -> OrchestrationResult:
        ativos = mirror.active_contratos(integration_id, cliente.ole_cliente_id, session_factory=self.Session) if cliente else []
        if ativos:
            log.info("event_noop_duplicate", integration_id=integration_id, documento=doc, contratos=len(ativos))
            return OrchestrationResult(action="skipped", message="cliente já possui contrato ativo")

        products = event.contract.products if event.contract else []
        mapping = self.mapper.map_products(integration_id, products)
        if mapping.main_plan is None:
            raise SyncValidationError(
                "nenhum plano principal mapeado para os produtos do evento",
                {"codes": [p.code for p in products], "unmapped": mapping.unmapped_codes},
            )
        formatted = self._format(event)
        ole_id = cliente.ole_cliente_id if cliente else None
        contract_payload = {
            "documento": doc,
            "ole_cliente_id": ole_id,
            "plano_codigo": mapping.main_plan.integration_code,
            "id_plano_principal": mapping.main_plan.ole_plan_id,
            "id_plano_adicional": [p.ole_plan_id for p in mapping.additional_plans],
            "equipamentos": mapping.equipments,
            "email_usuario": (formatted.get("email") or [None])[0],
        }
        items = []
        if cliente is None:
            items.append(self.store.enqueue(
                integration_id, CREATE_CLIENT, {"documento": doc, "cliente": formatted}, subject_key=doc,
            ))
        elif cliente.status != ATIVO:
            items.append(self.store.enqueue(
                integration_id, UPDATE_CLIENT,
                {"documento": doc, "ole_cliente_id": ole_id, "cliente": formatted, "reativar": True},
                subject_key=doc,
            ))
        items.append(self.store.enqueue(integration_id, CREATE_CONTRACT, contract_payload, subject_key=doc))
        return _queued(items)

    def _decide_cancel(self, integration_id: str, event: WebhookEventDTO, doc: str, cliente) -> OrchestrationResult:
        if cliente is None:
            return OrchestrationResult(action="skipped", message="cliente não encontrado no espelho")
        ativos = mirror.active_contratos(integration_id, cliente.ole_cliente_id, session_factory=self.Session)
        alvo = event.contract.ole_contrato_id if event.contract else None
        if alvo:
            ativos = [c for c in ativos if c.ole_contrato_id == str(alvo)]
        if not ativos:
            log.info("event_noop_cancelled", integration_id=integration_id, documento=doc)
            return OrchestrationResult(action="skipped", message="nenhum contrato ativo para cancelar")
        motivo = (event.contract.motivo if event.contract else None) or DEFAULT_CANCEL_REASON
        items = [
            self.store.enqueue(
                integration_id, CANCEL_CONTRACT,
                {"documento": doc, "ole_cliente_id": cliente.ole_cliente_id, "ole_contrato_id": c.ole_contrato_id, "motivo": motivo},
                subject_key=doc,
            )
            for c in ativos
        ]
        return _queued(items)

    def _format(self, event: WebhookEventDTO) -> dict:
        ok, reason = self.formatter.can_sync(event.client)
        if not ok:
            raise SyncValidationError(reason, {"documento": event.client.documento})
        res = self.formatter.format_for_ole(event.client)
        if not res.valid:
            raise SyncValidationError("; ".join(res.errors), {"errors": res.errors})
        return res.formatted

    # ================= Execução =================
    def execute(self, item: SyncQueueItem) -> ProviderResult:
        """Aplica um item na Olé. Erros seguem a taxonomia de core.errors."""
        handlers = {
            CREATE_CLIENT: self._exec_create_client,
            UPDATE_CLIENT: self._exec_update_client,
            CREATE_CONTRACT: self._exec_create_contract,
            CANCEL_CONTRACT: self._exec_cancel_contract,
        }
        handler = handlers.get(item.action)
        if handler is None:
            raise SyncValidationError(f"ação desconhecida: {item.action}")
        client = self.client_factory(item.integration_id)
        try:
            return handler(client, item.integration_id, item.payload or {})
        finally:
            client.close()

    def _exec_create_client(self, client: ProviderPort, integration_id: str, p: dict) -> ProviderResult:
        doc = p["documento"]
        found = client.buscar_cliente_por_documento(doc)
        records = extract_records(found.data) if found.ok else []
        if records:
            ole_id = extract_id(records[0], "id_cliente", "id")
            log.info("client_already_at_provider", integration_id=integration_id, documento=doc, ole_cliente_id=ole_id)
            res = found
        else:
            res = client.inserir_cliente(p["cliente"])
            ole_id = extract_id(res.data, "id_cliente", "id")
            log.info("client_created", integration_id=integration_id, documento=doc, ole_cliente_id=ole_id)
        if ole_id:
            self._mirror_cliente(integration_id, ole_id, doc, p["cliente"])
        else:
            log.warning("client_id_not_returned", integration_id=integration_id, documento=doc)
        return res

    def _exec_update_client(self, client: ProviderPort, integration_id: str, p: dict) -> ProviderResult:
        doc = p["documento"]
        ole_id = self._resolve_cliente_id(client, integration_id, p)
        # A Olé não tem campo nem endpoint de reativação de cliente: `reativar` só
        # marca o espelho como ativo; o serviço volta com o CREATE_CONTRACT seguinte.
        res = client.alterar_cliente(ole_id, p["cliente"])
        self._mirror_cliente(integration_id, ole_id, doc, p["cliente"])
        log.info("client_updated", integration_id=integration_id, ole_cliente_id=ole_id, reativar=bool(p.get("reativar")))
        return res

    def _exec_create_contract(self, client: ProviderPort, integration_id: str, p: dict) -> ProviderResult:
        ole_id = self._resolve_cliente_id(client, integration_id, p)
        plano = str(p["id_plano_principal"])
        listed = client.listar_contratos(ole_id)
        for rec in (extract_records(listed.data) if listed.ok else []):
            try:
                norm = mirror.normalize_contrato(rec, ole_id)
            except mirror.MalformedRecord:
                continue
            if norm["plano_id"] == plano and norm["status"] == ATIVO:
                log.info("contract_already_active", integration_id=integration_id, ole_cliente_id=ole_id, ole_contrato_id=norm["ole_contrato_id"])
                mirror.upsert_contrato(integration_id, norm, session_factory=self.Session)
                return listed
        equip = [e for e in (p.get("equipamentos") or []) if e.get("tag")]
        dados = {
            "id_cliente": ole_id,
            "id_plano_principal": plano,
            "id_plano_adicional": p.get("id_plano_adicional") or None,
            "id_modelo": [e["tag_id"] for e in equip if e.get("tag_id") is not None] or None,
            "mac": [e["tag"] for e in equip] or None,
            "email_usuario": p.get("email_usuario"),
        }
        res = client.inserir_contrato(dados)
        contrato_id = extract_id(res.data, "id_contrato", "id")
        log.info("contract_created", integration_id=integration_id, ole_cliente_id=ole_id, ole_contrato_id=contrato_id, plano=plano)
        if contrato_id:
            mirror.upsert_contrato(
                integration_id,
                {
                    "ole_contrato_id": contrato_id,
                    "ole_cliente_id": ole_id,
                    "plano_id": plano,
                    "plano": p.get("plano_codigo"),
                    "status": ATIVO,
                    "raw_data": res.data if isinstance(res.data, dict) else {"resposta": res.data},
                },
                session_factory=self.Session,
            )
        return res

    def _exec_cancel_contract(self, client: ProviderPort, integration_id: str, p: dict) -> ProviderResult:
        contrato_id = str(p["ole_contrato_id"])
        ole_id = p.get("ole_cliente_id")
        if ole_id:
            listed = client.listar_contratos(ole_id)
            for rec in (extract_records(listed.data) if listed.ok else []):
                if extract_id(rec, "id_contrato", "id") == contrato_id and mirror.derive_status(rec.get("status") or rec.get("situacao")) == CANCELADO:
                    log.info("contract_already_cancelled", integration_id=integration_id, ole_contrato_id=contrato_id)
                    mirror.set_contrato_status(integration_id, contrato_id, CANCELADO, session_factory=self.Session)
                    return listed
        res = client.cancelar_contrato(contrato_id, p.get("motivo"))
        mirror.set_contrato_status(integration_id, contrato_id, CANCELADO, session_factory=self.Session)
        log.info("contract_cancelled", integration_id=integration_id, ole_contrato_id=contrato_id)
        return res

    # ---------- Apoio ----------
    def _resolve_cliente_id(self, client: ProviderPort, integration_id: str, p: dict) -> str:
        """payload → espelho → busca no provedor; ausente é transitório (cliente ainda em voo)."""
        if p.get("ole_cliente_id"):
            return str(p["ole_cliente_id"])
        doc = p["documento"]
        local = mirror.find_cliente_by_documento(integration_id, doc, session_factory=self.Session)
        if local is not None:
            return local.ole_cliente_id
        found = client.buscar_cliente_por_documento(doc)
        records = extract_records(found.data) if found.ok else []
        ole_id = extract_id(records[0], "id_cliente", "id") if records else None
        if not ole_id:
            raise TransientProviderError(f"cliente {doc} ainda não existe na Olé")
        try:
            mirror.upsert_cliente(integration_id, mirror.normalize_cliente(records[0]), session_factory=self.Session)
        except mirror.MalformedRecord as e:
            log.warning("client_lookup_unmirrored", documento=doc, error=str(e))
        return ole_id

    def _mirror_cliente(self, integration_id: str, ole_id: str, doc: str, formatted: dict) -> None:
        snap = client_snapshot(formatted)
        snap.pop("endereco")
        mirror.upsert_cliente(
            integration_id,
            {"ole_cliente_id": str(ole_id), "documento": doc, **snap, "status": ATIVO, "raw_data": formatted},
            session_factory=self.Session,
        )


def client_snapshot(formatted: dict) -> dict:
    """Campos comparáveis de um formulário /clientes/inserir, no formato das colunas do espelho."""
    ddd = (formatted.get("telefone_ddd") or [""])[0]
    numero = (formatted.get("telefone_numero") or [""])[0]
    return {
        "nome": formatted.get("nome", ""),
        "email": (formatted.get("email") or [None])[0],
        "telefone": f"{ddd}{numero}" or None,
        "endereco": _endereco(formatted),
        "cidade": formatted.get("endereco_cidade"),
        "estado": formatted.get("endereco_uf"),
        "cep": formatted.get("endereco_cep"),
    }

def _endereco(form: dict) -> str | None:
    return " ".join(str(v) for v in (form.get("endereco_logradouro"), form.get("endereco_numero")) if v) or None

def _comparable(field: str, value) -> str:
    if field in ("telefone", "cep"):
        return clean_document(value)
    return " ".join(str(value or "").split()).casefold()

def changed_fields(cliente, formatted: dict) -> list[str]:
    """Campos de CHANGE_FIELDS que diferem entre o espelho e o novo formulário.

    O endereço só existe no `raw_data` gravado pelo orquestrador; cliente vindo da
    importação conta como alterado quando o evento traz endereço.
    """
    new = client_snapshot(formatted)
    raw = cliente.raw_data if isinstance(cliente.raw_data, dict) else {}
    current = {f: getattr(cliente, f) for f in CHANGE_FIELDS if f != "endereco"}
    current["endereco"] = _endereco(raw)
    return [f for f in CHANGE_FIELDS if _comparable(f, current[f]) != _comparable(f, new[f])]


def _queued(items: list[SyncQueueItem]) -> OrchestrationResult:
    ids = [i.id for i in items]
    actions = [i.action for i in items]
    log.info("event_queued", queue_ids=ids, actions=actions)
    return OrchestrationResult(action="queued", queue_ids=ids, actions=actions, message=f"{len(ids)} item(ns) na fila")
