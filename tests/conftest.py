# tests/conftest.py
# Fixtures comuns: SQLite em memória, container DI e provedor Olé falso

from datetime import datetime, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.pool import StaticPool

from oletv_sync.connectors.oletv.client import clear_credentials_cache
from oletv_sync.core.crypto import Cipher, generate_encryption_key
from oletv_sync.core.db import create_session_factory
from oletv_sync.core.di import bootstrap_di
from oletv_sync.core.settings import Settings
from oletv_sync.ports.interfaces import ProviderResult
from oletv_sync.repo.models import Base, Integration

INTEGRATION_ID = "int-1"
WEBHOOK_TOKEN = "tok-int-1"


class FakeClock:
    """Relógio controlável para a fila (naive UTC)."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider:
    """Provedor em memória com a mesma interface do OleTvClient."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.clientes: dict[str, dict] = {}      # documento -> registro
        self.contratos: dict[str, list[dict]] = {}  # id_cliente -> registros
        self.boletos: dict[str, list[dict]] = {}
        self.pages: list[list[dict]] = []
        self.fail_with: dict[str, Exception] = {}
        self.closed = 0
        self._next_id = 100

    def _call(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail_with:
            raise self.fail_with[name]

    def _id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def listar_clientes(self, pagina=None, limite=None):
        self._call("listar_clientes", pagina, limite)
        idx = (pagina or 1) - 1
        return ProviderResult(ok=True, data=self.pages[idx] if idx < len(self.pages) else [])

    def buscar_cliente_por_documento(self, documento):
        self._call("buscar_cliente_por_documento", documento)
        rec = self.clientes.get(documento)
        if rec is None:
            return ProviderResult(ok=False, data={"retorno_status": False}, message="não encontrado")
        return ProviderResult(ok=True, data={"retorno_status": True, "dados": [rec]})

    def inserir_cliente(self, dados):
        self._call("inserir_cliente", dados)
        doc = "".join(ch for ch in dados["cpf_cnpj"] if ch.isdigit())
        rec = {"id": self._id(), "cpf_cnpj": doc, "nome": dados["nome"], "status": "Ativo"}
        self.clientes[doc] = rec
        return ProviderResult(ok=True, data={"retorno_status": True, "id_cliente": rec["id"]})

    def alterar_cliente(self, id_cliente, dados):
        self._call("alterar_cliente", id_cliente, dados)
        return ProviderResult(ok=True, data={"retorno_status": True})

    def listar_contratos(self, id_cliente):
        self._call("listar_contratos", id_cliente)
        return ProviderResult(ok=True, data=list(self.contratos.get(id_cliente, [])))

    def inserir_contrato(self, dados):
        self._call("inserir_contrato", dados)
        rec = {"id": self._id(), "id_plano_principal": dados["id_plano_principal"], "status": "Ativo"}
        self.contratos.setdefault(str(dados["id_cliente"]), []).append(rec)
        return ProviderResult(ok=True, data={"retorno_status": True, "id_contrato": rec["id"]})

    def cancelar_contrato(self, id_contrato, motivo=None):
        self._call("cancelar_contrato", id_contrato, motivo)
        for recs in self.contratos.values():
            for rec in recs:
                if rec["id"] == id_contrato:
                    rec["status"] = "Cancelado"
        return ProviderResult(ok=True, data={"retorno_status": True})

    def listar_boletos(self, id_cliente):
        self._call("listar_boletos", id_cliente)
        return ProviderResult(ok=True, data=list(self.boletos.get(id_cliente, [])))

    def close(self):
        self.closed += 1


@pytest.fixture
def encryption_key():
    return generate_encryption_key()


@pytest.fixture
def settings(encryption_key):
    return Settings(
        database_url="sqlite://",
        encryption_key=encryption_key,
        min_call_interval_ms=0,
        rate_limit_default_wait_s=0,
        import_page_size=2,
        import_batch_size=2,
    )


@pytest.fixture
def session_factory():
    """SQLite em memória compartilhado entre sessões (StaticPool)."""
    factory = create_session_factory(
        "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(factory.kw["bind"])
    return factory


@pytest.fixture
def threaded_session_factory(tmp_path):
    """SQLite em arquivo, uma conexão por thread; BEGIN IMMEDIATE serializa os escritores."""
    factory = create_session_factory(
        f"sqlite:///{tmp_path / 'sync.db'}", connect_args={"check_same_thread": False, "timeout": 30}
    )
    engine = factory.kw["bind"]

    @event.listens_for(engine, "connect")
    def _driver_autocommit(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def container(settings, session_factory):
    bootstrap_di(settings, session_factory)
    clear_credentials_cache()
    yield
    clear_credentials_cache()


@pytest.fixture
def integration(session_factory, encryption_key):
    with session_factory() as s, s.begin():
        s.add(Integration(
            id=INTEGRATION_ID,
            name="Provedor Teste",
            is_active=True,
            ole_keyapi="key-123",
            ole_login="login-teste",
            ole_password=Cipher(encryption_key).encrypt("senha-secreta"),
            webhook_token=WEBHOOK_TOKEN,
        ))
    return INTEGRATION_ID


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sample_event():
    """Evento de criação com CPF, nascimento e um produto mapeável."""
    return {
        "eventType": "create",
        "client": {
            "externalId": "erp-42",
            "documento": "123.456.789-00",
            "nome": "Maria da Silva",
            "email": "Maria@Exemplo.com",
            "telefone": "(11) 98765-4321",
            "dataNascimento": "1990-05-17",
            "endereco": "Rua das Flores",
            "numero": "10",
            "cidade": "São Paulo",
            "estado": "sp",
            "cep": "01234-567",
        },
        "contract": {
            "products": [
                {"externalId": "p1", "code": "TV_FULL", "name": "TV Completa", "active": True},
            ],
        },
    }
