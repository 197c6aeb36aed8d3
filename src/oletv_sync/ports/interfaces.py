"""Portas (interfaces) e DTOs do motor de sincronização."""
from __future__ import annotations
from typing import Any, Protocol
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

class ProductDTO(BaseModel):
    """Produto/serviço do ERP como chega no webhook."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    external_id: str | None = Field(default=None, alias="externalId")
    code: str
    name: str = ""
    quantity: int | None = None
    active: bool = True
    demonstration: bool = False
    tag: str | None = None
    tag_id: int | None = Field(default=None, alias="tagId")

class ClientDTO(BaseModel):
    """Dados do cliente no formato interno (datas YYYY-MM-DD)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    external_id: str | None = Field(default=None, alias="externalId")
    documento: str = Field(min_length=11, max_length=18)
    nome: str = ""
    email: str | None = None
    telefone: str | None = None
    data_nascimento: str | None = Field(default=None, alias="dataNascimento")
    tipo_logradouro: str | None = Field(default=None, alias="tipoLogradouro")
    endereco: str | None = None
    numero: str | None = None
    complemento: str | None = None
    bairro: str | None = None
    cidade: str | None = None
    estado: str | None = Field(default=None, max_length=2)
    cep: str | None = Field(default=None, max_length=9)
    dia_vencimento: int | None = Field(default=None, alias="diaVencimento", ge=1, le=31)

class ContractDTO(BaseModel):
    """Contrato do ERP; `ole_contrato_id` restringe um cancelamento a um contrato."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    external_id: str | None = Field(default=None, alias="externalId")
    ole_contrato_id: str | None = Field(default=None, alias="oleContratoId")
    motivo: str | None = None
    products: list[ProductDTO] = Field(default_factory=list)

class WebhookEventDTO(BaseModel):
    """Evento validado do ERP: { eventType, client, contract? }."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    event_type: str = Field(alias="eventType", min_length=1)
    client: ClientDTO
    contract: ContractDTO | None = None

class ProviderResult(BaseModel):
    """Resposta normalizada do provedor."""
    ok: bool
    data: Any = None
    status_code: int = 200
    message: str | None = None

class WireModel(BaseModel):
    """Respostas da API HTTP: camelCase no JSON (`model_dump(by_alias=True)`)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class OrchestrationResult(WireModel):
    """Decisão do orquestrador para um evento."""
    action: str  # queued|skipped
    queue_ids: list[int] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list)
    message: str = ""

class RunSummary(BaseModel):
    """Contadores de uma passada do processador."""
    integrations: int = 0
    claimed: int = 0
    processed: int = 0
    failed: int = 0
    retried: int = 0
    skipped: bool = False

class EntitySyncResult(WireModel):
    entity: str
    synced: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = Field(default=0, alias="duration")

class FullSyncResult(WireModel):
    """Resultado de uma importação completa."""
    success: bool
    state: str
    started_at: str
    completed_at: str | None = None
    duration_ms: int = Field(default=0, alias="duration")
    total_synced: int = 0
    total_failed: int = 0
    error: str | None = None
    results: dict[str, EntitySyncResult] = Field(default_factory=dict)
    local_stats: dict | None = None

class QueueExecutor(Protocol):
    def execute(self, item) -> ProviderResult | None: ...

class ProviderPort(Protocol):
    def listar_clientes(self, pagina: int | None = None, limite: int | None = None) -> ProviderResult: ...
    def buscar_cliente_por_documento(self, documento: str) -> ProviderResult: ...
    def inserir_cliente(self, dados: dict) -> ProviderResult: ...
    def alterar_cliente(self, id_cliente: str, dados: dict) -> ProviderResult: ...
    def listar_contratos(self, id_cliente: str) -> ProviderResult: ...
    def inserir_contrato(self, dados: dict) -> ProviderResult: ...
    def cancelar_contrato(self, id_contrato: str, motivo: str | None = None) -> ProviderResult: ...
    def listar_boletos(self, id_cliente: str) -> ProviderResult: ...
    def close(self) -> None: ...
