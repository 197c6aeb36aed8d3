# tests/test_orchestrator.py
# Decisão por evento e execução idempotente das ações na Olé

from datetime import date

import pytest

from oletv_sync.core.errors import SyncValidationError, TransientProviderError
from oletv_sync.domain.services.client_formatter import ClientFormatter
from oletv_sync.domain.services.orchestrator import Orchestrator, changed_fields, event_kind
from oletv_sync.domain.services.product_mapper import ProductMapper
from oletv_sync.ports.interfaces import WebhookEventDTO
from oletv_sync.repo import mirror
from oletv_sync.repo.models import (
    SyncQueueItem, CREATE_CLIENT, UPDATE_CLIENT, CREATE_CONTRACT, CANCEL_CONTRACT, ATIVO, CANCELADO,
)
from oletv_sync.repo.queue_store import SyncQueueStore

from conftest import INTEGRATION_ID

DOC = "12345678900"
FORMATTED = {"nome": "MARIA DA SILVA", "tipo_pessoa": "F", "cpf_cnpj": "123.456.789-00", "email": ["maria@exemplo.com"]}


@pytest.fixture
def store(session_factory, clock, integration):
    return SyncQueueStore(session_factory, clock=clock)


@pytest.fixture
def orchestrator(store, session_factory, provider):
    mapper = ProductMapper(session_factory)
    mapper.upsert_mapping(INTEGRATION_ID, "TV_FULL", "20", ole_plan_name="Completo", priority=5)
    mapper.upsert_mapping(INTEGRATION_ID, "HBO", "90", priority=1, is_main_plan=False)
    return Orchestrator(
        store, mapper, ClientFormatter(today=date(2024, 6, 1)),
        client_factory=lambda _iid: provider,
        session_factory=session_factory,
    )


def event(body: dict, **overrides) -> WebhookEventDTO:
    return WebhookEventDTO.model_validate({**body, **overrides})


def seed_cliente(session_factory, ole_id="55", status=ATIVO):
    mirror.upsert_cliente(
        INTEGRATION_ID,
        {"ole_cliente_id": ole_id, "documento": DOC, "nome": "MARIA", "status": status, "raw_data": {}},
        session_factory=session_factory,
    )


def seed_contrato(session_factory, contrato_id, ole_id="55", status=ATIVO):
    mirror.upsert_contrato(
        INTEGRATION_ID,
        {"ole_contrato_id": contrato_id, "ole_cliente_id": ole_id, "plano_id": "20", "status": status, "raw_data": {}},
        session_factory=session_factory,
    )


def queued(store):
    items, _ = store.list_items(INTEGRATION_ID, limit=100)
    return sorted(items, key=lambda i: i.id)


def item(action, payload) -> SyncQueueItem:
    return SyncQueueItem(integration_id=INTEGRATION_ID, action=action, payload=payload)


def _formatted(orchestrator, body: dict) -> dict:
    return orchestrator.formatter.format_for_ole(event(body).client).formatted


class TestEventKind:
    """Normalização do eventType"""

    @pytest.mark.parametrize("raw,kind", [
        ("create", "create"),
        ("client.created", "create"),
        ("UPDATE", "update"),
        ("contract:cancelled", "cancel"),
        ("canceled", "cancel"),
        ("delete", None),
        ("", None),
    ])
    def test_aliases(self, raw, kind):
        assert event_kind(raw) == kind


class TestCreateDecision:
    """Eventos de criação"""

    def test_new_client_gets_client_and_contract(self, orchestrator, store, sample_event):
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event))
        assert res.action == "queued"
        assert res.actions == [CREATE_CLIENT, CREATE_CONTRACT]
        client_item, contract_item = queued(store)
        assert client_item.subject_key == DOC
        assert contract_item.subject_key == DOC
        assert client_item.payload["cliente"]["cpf_cnpj"] == "123.456.789-00"
        assert contract_item.payload["id_plano_principal"] == "20"
        assert contract_item.payload["ole_cliente_id"] is None
        assert contract_item.payload["email_usuario"] == "maria@exemplo.com"

    def test_additional_plans_and_equipment_in_payload(self, orchestrator, store, sample_event):
        sample_event["contract"]["products"] += [
            {"code": "HBO", "name": "HBO"},
            {"code": "STB", "name": "Caixa", "tag": "AA:BB:CC:00:11:22", "tagId": 4},
        ]
        orchestrator.handle_event(INTEGRATION_ID, event(sample_event))
        contract_item = queued(store)[-1]
        assert contract_item.payload["id_plano_adicional"] == ["90"]
        assert contract_item.payload["equipamentos"] == [
            {"tag": "AA:BB:CC:00:11:22", "tag_id": 4, "integration_code": "STB"},
        ]

    def test_existing_client_gets_only_contract(self, orchestrator, store, session_factory, sample_event):
        seed_cliente(session_factory)
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event))
        assert res.actions == [CREATE_CONTRACT]
        assert queued(store)[0].payload["ole_cliente_id"] == "55"

    def test_duplicate_delivery_is_noop(self, orchestrator, store, session_factory, sample_event):
        """Cliente com contrato ativo: nada entra na fila"""
        seed_cliente(session_factory)
        seed_contrato(session_factory, "700")
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event))
        assert res.action == "skipped"
        assert queued(store) == []

    def test_cancelled_client_is_reactivated(self, orchestrator, store, session_factory, sample_event):
        seed_cliente(session_factory, status=CANCELADO)
        seed_contrato(session_factory, "700", status=CANCELADO)
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event))
        assert res.actions == [UPDATE_CLIENT, CREATE_CONTRACT]
        assert queued(store)[0].payload["reativar"] is True

    def test_unmapped_products_rejected_before_enqueue(self, orchestrator, store, sample_event):
        sample_event["contract"]["products"] = [{"code": "NADA"}]
        with pytest.raises(SyncValidationError) as exc:
            orchestrator.handle_event(INTEGRATION_ID, event(sample_event))
        assert exc.value.details["unmapped"] == ["NADA"]
        assert queued(store) == []

    def test_invalid_client_rejected_before_enqueue(self, orchestrator, store, sample_event):
        """PF sem nascimento não gera nenhum item"""
        del sample_event["client"]["dataNascimento"]
        with pytest.raises(SyncValidationError):
            orchestrator.handle_event(INTEGRATION_ID, event(sample_event))
        assert queued(store) == []

    def test_unknown_event_type(self, orchestrator, store, sample_event):
        with pytest.raises(SyncValidationError):
            orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="delete"))
        assert queued(store) == []


class TestUpdateDecision:
    """Eventos de alteração"""

    def test_known_client_updated(self, orchestrator, store, session_factory, sample_event):
        seed_cliente(session_factory)
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="update"))
        assert res.actions == [UPDATE_CLIENT]
        payload = queued(store)[0].payload
        assert payload["ole_cliente_id"] == "55"
        assert payload["cliente"]["nome"] == "MARIA DA SILVA"

    def test_unchanged_client_skipped(self, orchestrator, store, provider, sample_event):
        """Segundo evento idêntico depois de aplicado o primeiro"""
        orchestrator.execute(item(CREATE_CLIENT, {"documento": DOC, "cliente": _formatted(orchestrator, sample_event)}))
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="update"))
        assert res.action == "skipped"
        assert res.message == "nenhuma alteração detectada"
        assert queued(store) == []

    def test_changed_field_detected(self, orchestrator, store, sample_event):
        orchestrator.execute(item(CREATE_CLIENT, {"documento": DOC, "cliente": _formatted(orchestrator, sample_event)}))
        sample_event["client"]["cidade"] = "Campinas"
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="update"))
        assert res.actions == [UPDATE_CLIENT]

    def test_imported_client_compared_by_columns(self, orchestrator, session_factory, sample_event):
        """Cliente vindo da importação: telefone e CEP comparados só pelos dígitos"""
        mirror.upsert_cliente(INTEGRATION_ID, {
            "ole_cliente_id": "55", "documento": DOC, "nome": "Maria da Silva", "email": "maria@exemplo.com",
            "telefone": "(11) 98765-4321", "cidade": "São Paulo", "estado": "SP", "cep": "01234-567",
            "status": ATIVO, "raw_data": {"id": "55"},
        }, session_factory=session_factory)
        cliente = mirror.find_cliente_by_documento(INTEGRATION_ID, DOC, session_factory=session_factory)
        formatted = _formatted(orchestrator, sample_event)
        assert changed_fields(cliente, formatted) == ["endereco"]
        formatted.pop("endereco_logradouro")
        formatted.pop("endereco_numero")
        assert changed_fields(cliente, formatted) == []

    def test_unknown_client_treated_as_create(self, orchestrator, sample_event):
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="update"))
        assert res.actions == [CREATE_CLIENT, CREATE_CONTRACT]


class TestCancelDecision:
    """Eventos de cancelamento"""

    def test_one_item_per_active_contract(self, orchestrator, store, session_factory, sample_event):
        seed_cliente(session_factory)
        seed_contrato(session_factory, "700")
        seed_contrato(session_factory, "701")
        seed_contrato(session_factory, "699", status=CANCELADO)
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="cancel"))
        assert res.actions == [CANCEL_CONTRACT, CANCEL_CONTRACT]
        payloads = [i.payload for i in queued(store)]
        assert [p["ole_contrato_id"] for p in payloads] == ["700", "701"]
        assert payloads[0]["motivo"] == "Cancelamento via webhook"

    def test_target_contract_and_reason(self, orchestrator, store, session_factory, sample_event):
        seed_cliente(session_factory)
        seed_contrato(session_factory, "700")
        seed_contrato(session_factory, "701")
        sample_event["contract"].update(oleContratoId="701", motivo="inadimplência")
        orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="cancel"))
        (only,) = queued(store)
        assert only.payload["ole_contrato_id"] == "701"
        assert only.payload["motivo"] == "inadimplência"

    def test_nothing_to_cancel(self, orchestrator, store, session_factory, sample_event):
        seed_cliente(session_factory)
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="cancel"))
        assert res.action == "skipped"
        assert queued(store) == []

    def test_unknown_client(self, orchestrator, sample_event):
        res = orchestrator.handle_event(INTEGRATION_ID, event(sample_event, eventType="cancel"))
        assert res.action == "skipped"


class TestExecuteClient:
    """CREATE_CLIENT / UPDATE_CLIENT"""

    def test_creates_and_mirrors(self, orchestrator, provider, session_factory):
        orchestrator.execute(item(CREATE_CLIENT, {"documento": DOC, "cliente": FORMATTED}))
        assert provider.names() == ["buscar_cliente_por_documento", "inserir_cliente"]
        local = mirror.find_cliente_by_documento(INTEGRATION_ID, DOC, session_factory=session_factory)
        assert local.ole_cliente_id == "101"
        assert local.email == "maria@exemplo.com"

    def test_existing_client_not_duplicated(self, orchestrator, provider, session_factory):
        """Reexecução após sucesso não cadastra de novo"""
        provider.clientes[DOC] = {"id": "55", "cpf_cnpj": DOC, "nome": "MARIA", "status": "Ativo"}
        orchestrator.execute(item(CREATE_CLIENT, {"documento": DOC, "cliente": FORMATTED}))
        assert "inserir_cliente" not in provider.names()
        assert mirror.find_cliente_by_documento(INTEGRATION_ID, DOC, session_factory=session_factory).ole_cliente_id == "55"

    def test_update_uses_resolved_id(self, orchestrator, provider, session_factory):
        seed_cliente(session_factory, status=CANCELADO)
        orchestrator.execute(item(UPDATE_CLIENT, {"documento": DOC, "cliente": FORMATTED, "reativar": True}))
        assert provider.calls[-1][:2] == ("alterar_cliente", "55")
        local = mirror.find_cliente_by_documento(INTEGRATION_ID, DOC, session_factory=session_factory)
        assert local.status == ATIVO

    def test_reactivation_sends_only_client_form(self, orchestrator, provider, session_factory):
        """A Olé não recebe campo de reativação"""
        seed_cliente(session_factory, status=CANCELADO)
        orchestrator.execute(item(UPDATE_CLIENT, {"documento": DOC, "cliente": FORMATTED, "reativar": True}))
        assert provider.calls[-1] == ("alterar_cliente", "55", FORMATTED)

    def test_provider_closed_after_each_item(self, orchestrator, provider):
        orchestrator.execute(item(CREATE_CLIENT, {"documento": DOC, "cliente": FORMATTED}))
        orchestrator.execute(item(CREATE_CLIENT, {"documento": DOC, "cliente": FORMATTED}))
        assert provider.closed == 2

    def test_provider_closed_on_failure(self, orchestrator, provider):
        provider.fail_with["buscar_cliente_por_documento"] = TransientProviderError("timeout")
        with pytest.raises(TransientProviderError):
            orchestrator.execute(item(CREATE_CLIENT, {"documento": DOC, "cliente": FORMATTED}))
        assert provider.closed == 1


class TestExecuteContract:
    """CREATE_CONTRACT / CANCEL_CONTRACT"""

    def _contract_payload(self, **overrides):
        payload = {
            "documento": DOC,
            "ole_cliente_id": None,
            "plano_codigo": "TV_FULL",
            "id_plano_principal": "20",
            "id_plano_adicional": ["90"],
            "equipamentos": [{"tag": "AA:BB", "tag_id": 4, "integration_code": "STB"}],
            "email_usuario": "maria@exemplo.com",
        }
        payload.update(overrides)
        return payload

    def test_client_id_resolved_from_mirror(self, orchestrator, provider, session_factory):
        seed_cliente(session_factory)
        orchestrator.execute(item(CREATE_CONTRACT, self._contract_payload()))
        name, dados = provider.calls[-1]
        assert name == "inserir_contrato"
        assert dados["id_cliente"] == "55"
        assert dados["id_plano_principal"] == "20"
        assert dados["id_plano_adicional"] == ["90"]
        assert dados["mac"] == ["AA:BB"]
        assert dados["id_modelo"] == [4]
        contratos = mirror.active_contratos(INTEGRATION_ID, "55", session_factory=session_factory)
        assert [c.plano_id for c in contratos] == ["20"]

    def test_client_id_resolved_from_provider(self, orchestrator, provider, session_factory):
        provider.clientes[DOC] = {"id": "77", "cpf_cnpj": DOC, "nome": "MARIA", "status": "Ativo"}
        orchestrator.execute(item(CREATE_CONTRACT, self._contract_payload()))
        assert provider.calls[-1][1]["id_cliente"] == "77"
        assert mirror.find_cliente_by_documento(INTEGRATION_ID, DOC, session_factory=session_factory) is not None

    def test_missing_client_is_transient(self, orchestrator, provider):
        """Cliente ainda não criado: tenta de novo mais tarde"""
        with pytest.raises(TransientProviderError):
            orchestrator.execute(item(CREATE_CONTRACT, self._contract_payload()))
        assert "inserir_contrato" not in provider.names()

    def test_rerun_does_not_duplicate_contract(self, orchestrator, provider, session_factory):
        seed_cliente(session_factory)
        orchestrator.execute(item(CREATE_CONTRACT, self._contract_payload()))
        orchestrator.execute(item(CREATE_CONTRACT, self._contract_payload()))
        assert provider.names().count("inserir_contrato") == 1
        assert len(provider.contratos["55"]) == 1

    def test_cancel(self, orchestrator, provider, session_factory):
        seed_cliente(session_factory)
        seed_contrato(session_factory, "700")
        provider.contratos["55"] = [{"id": "700", "status": "Ativo"}]
        orchestrator.execute(item(CANCEL_CONTRACT, {
            "documento": DOC, "ole_cliente_id": "55", "ole_contrato_id": "700", "motivo": "pedido",
        }))
        assert provider.calls[-1] == ("cancelar_contrato", "700", "pedido")
        assert mirror.active_contratos(INTEGRATION_ID, "55", session_factory=session_factory) == []

    def test_cancel_already_cancelled_at_provider(self, orchestrator, provider, session_factory):
        seed_cliente(session_factory)
        seed_contrato(session_factory, "700")
        provider.contratos["55"] = [{"id": "700", "status": "Cancelado"}]
        orchestrator.execute(item(CANCEL_CONTRACT, {
            "documento": DOC, "ole_cliente_id": "55", "ole_contrato_id": "700", "motivo": "pedido",
        }))
        assert "cancelar_contrato" not in provider.names()
        assert mirror.active_contratos(INTEGRATION_ID, "55", session_factory=session_factory) == []

    def test_unknown_action(self, orchestrator):
        with pytest.raises(SyncValidationError):
            orchestrator.execute(item("DROP", {}))


class TestEndToEnd:
    """Evento → fila → execução, na ordem por cliente"""

    def test_create_flow(self, orchestrator, store, provider, session_factory, sample_event):
        orchestrator.handle_event(INTEGRATION_ID, event(sample_event))
        first = store.claim_batch(INTEGRATION_ID, 10)
        assert [i.action for i in first] == [CREATE_CLIENT]
        orchestrator.execute(first[0])
        store.mark_success(first[0].id)

        second = store.claim_batch(INTEGRATION_ID, 10)
        assert [i.action for i in second] == [CREATE_CONTRACT]
        orchestrator.execute(second[0])
        store.mark_success(second[0].id)

        assert provider.names() == [
            "buscar_cliente_por_documento", "inserir_cliente", "listar_contratos", "inserir_contrato",
        ]
        # segunda entrega do mesmo evento não gera nada
        assert orchestrator.handle_event(INTEGRATION_ID, event(sample_event)).action == "skipped"
