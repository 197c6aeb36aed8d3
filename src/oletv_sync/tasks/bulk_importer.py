"""Importação em lote Olé TV → espelho local (clientes, contratos, boletos).

Estados por integração:
    idle → clientes → contratos → boletos → done
                  ↘ error (credencial recusada, integração inválida, banco indisponível)

Falha de um registro conta em `failed` e não interrompe a paginação.
Falhas da execução em si levam a `error` com o progresso parcial mantido.
"""
from __future__ import annotations
import threading
import time
from typing import Callable
from kink import di
from sqlalchemy.exc import SQLAlchemyError
from ..connectors.oletv.client import OleTvClient, extract_records, extract_id
from ..core.clock import utcnow
from ..core.errors import CredentialsError, ProviderAuthError, ProviderError
from ..core.logging import bound_integration, get_logger
from ..core.settings import Settings
from ..ports.interfaces import EntitySyncResult, FullSyncResult, ProviderPort
from ..repo import integrations as integrations_repo
from ..repo import mirror
from .periodic import PeriodicTask

log = get_logger()

IDLE, CLIENTES, CONTRATOS, BOLETOS, DONE, ERROR = "idle", "clientes", "contratos", "boletos", "done", "error"
MAX_ERRORS_KEPT = 100


class BulkImporter:
    """Espelha os dados da Olé de uma integração, respeitando o gate de chamadas."""

    def __init__(
        self,
        settings: Settings | None = None,
        client_factory: Callable[[str], ProviderPort] | None = None,
        session_factory=None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.s = settings or di[Settings]
        self.client_factory = client_factory or OleTvClient.from_integration
        self.Session = session_factory or di["session_factory"]
        self.monotonic = monotonic
        self._states: dict[str, str] = {}
        self._running: set[str] = set()
        self._lock = threading.Lock()

    def state(self, integration_id: str) -> str:
        return self._states.get(integration_id, IDLE)

    def _set_state(self, integration_id: str, state: str) -> None:
        self._states[integration_id] = state
        log.info("import_state", integration_id=integration_id, state=state)

    # ---------- Execução completa ----------
    def run(self, integration_id: str) -> FullSyncResult:
        with bound_integration(integration_id):
            return self._run(integration_id)

    def _run(self, integration_id: str) -> FullSyncResult:
        started_at = utcnow()
        with self._lock:
            if integration_id in self._running:
                log.warning("import_already_running", integration_id=integration_id)
                return FullSyncResult(
                    success=False, state=self.state(integration_id), started_at=started_at.isoformat(),
                    error="importação já em andamento",
                )
            self._running.add(integration_id)
        t0 = self.monotonic()
        result = FullSyncResult(success=False, state=IDLE, started_at=started_at.isoformat())
        client = None
        try:
            self._set_state(integration_id, IDLE)
            client = self.client_factory(integration_id)
            for entity, step in ((CLIENTES, self.sync_clientes), (CONTRATOS, self.sync_contratos), (BOLETOS, self.sync_boletos)):
                self._set_state(integration_id, entity)
                result.results[entity] = step(client, integration_id)
            self._set_state(integration_id, DONE)
            completed = utcnow()
            integrations_repo.touch_last_sync(integration_id, completed, session_factory=self.Session)
            result.success = True
        except (ProviderAuthError, CredentialsError) as e:
            phase = self.state(integration_id)
            self._set_state(integration_id, ERROR)
            result.error = str(e)
            log.error("import_aborted", integration_id=integration_id, error=str(e), phase=phase)
        except Exception as e:
            phase = self.state(integration_id)
            self._set_state(integration_id, ERROR)
            result.error = f"{type(e).__name__}: {e}"
            log.error("import_failed", integration_id=integration_id, phase=phase, exc_info=True)
        finally:
            if client is not None:
                client.close()
            with self._lock:
                self._running.discard(integration_id)
        result.state = self.state(integration_id)
        result.completed_at = utcnow().isoformat()
        result.duration_ms = int((self.monotonic() - t0) * 1000)
        result.total_synced = sum(r.synced for r in result.results.values())
        result.total_failed = sum(r.failed for r in result.results.values())
        try:
            result.local_stats = mirror.local_stats(integration_id, session_factory=self.Session)
        except SQLAlchemyError:
            log.error("import_stats_unavailable", integration_id=integration_id, exc_info=True)
        log.info(
            "import_finished", integration_id=integration_id, state=result.state,
            total_synced=result.total_synced, total_failed=result.total_failed, duration_ms=result.duration_ms,
        )
        return result

    def run_all(self) -> list[FullSyncResult]:
        """Importa todas as integrações ativas, uma após a outra; falha de uma não para as demais."""
        try:
            ids = [i.id for i in integrations_repo.list_active(session_factory=self.Session)]
        except SQLAlchemyError:
            log.error("import_db_unavailable", exc_info=True)
            return []
        results = []
        for iid in ids:
            try:
                results.append(self.run(iid))
            except Exception:
                log.error("import_integration_failed", integration_id=iid, exc_info=True)
        return results

    # ---------- Entidades ----------
    def sync_clientes(self, client: ProviderPort, integration_id: str) -> EntitySyncResult:
        """Pagina /clientes/listar até página vazia, curta, repetida ou o limite de páginas."""
        res = EntitySyncResult(entity=CLIENTES)
        t0 = self.monotonic()
        limite = self.s.import_page_size
        seen: set[tuple] = set()
        for pagina in range(1, self.s.import_max_pages + 1):
            try:
                page = client.listar_clientes(pagina=pagina, limite=limite)
            except ProviderAuthError:
                raise
            except ProviderError as e:
                _error(res, f"página {pagina}: {e}")
                log.warning("import_page_failed", integration_id=integration_id, pagina=pagina, error=str(e))
                break
            records = extract_records(page.data) if page.ok else []
            if not records:
                break
            signature = tuple(extract_id(r, "id", "id_cliente", "idCliente") for r in records)
            if signature in seen:
                log.warning("import_repeated_page", integration_id=integration_id, pagina=pagina)
                break
            seen.add(signature)
            for rec in records:
                self._store(res, integration_id, rec, mirror.normalize_cliente, mirror.upsert_cliente)
            if len(records) < limite:
                break
        else:
            log.warning("import_max_pages_reached", integration_id=integration_id, max_pages=self.s.import_max_pages)
        res.duration_ms = int((self.monotonic() - t0) * 1000)
        log.info("import_entity_done", integration_id=integration_id, entity=CLIENTES, synced=res.synced, failed=res.failed)
        return res

    def sync_contratos(self, client: ProviderPort, integration_id: str) -> EntitySyncResult:
        return self._per_cliente(
            CONTRATOS, integration_id,
            lambda ole_id, doc: client.listar_contratos(ole_id),
            mirror.normalize_contrato, mirror.upsert_contrato,
        )

    def sync_boletos(self, client: ProviderPort, integration_id: str) -> EntitySyncResult:
        return self._per_cliente(
            BOLETOS, integration_id,
            lambda ole_id, doc: client.listar_boletos(ole_id),
            mirror.normalize_boleto, mirror.upsert_boleto,
        )

    def _per_cliente(self, entity: str, integration_id: str, fetch, normalize, upsert) -> EntitySyncResult:
        """Uma listagem por cliente espelhado, em lotes de `import_batch_size`."""
        res = EntitySyncResult(entity=entity)
        t0 = self.monotonic()
        refs = mirror.list_cliente_refs(integration_id, session_factory=self.Session)
        size = max(self.s.import_batch_size, 1)
        for start in range(0, len(refs), size):
            batch = refs[start:start + size]
            log.info("import_batch", integration_id=integration_id, entity=entity, offset=start, size=len(batch), total=len(refs))
            for ole_id, doc in batch:
                try:
                    listed = fetch(ole_id, doc)
                except ProviderAuthError:
                    raise
                except ProviderError as e:
                    res.failed += 1
                    _error(res, f"{entity} cliente {ole_id}: {e}")
                    log.warning("import_fetch_failed", integration_id=integration_id, entity=entity, ole_cliente_id=ole_id, error=str(e))
                    continue
                for rec in (extract_records(listed.data) if listed.ok else []):
                    self._store(res, integration_id, rec, lambda r, _id=ole_id: normalize(r, _id), upsert)
        res.duration_ms = int((self.monotonic() - t0) * 1000)
        log.info("import_entity_done", integration_id=integration_id, entity=entity, synced=res.synced, failed=res.failed)
        return res

    def _store(self, res: EntitySyncResult, integration_id: str, rec, normalize, upsert) -> None:
        """Normaliza e grava um registro na sua própria transação."""
        try:
            data = normalize(rec)
            upsert(integration_id, data, session_factory=self.Session)
        except mirror.MalformedRecord as e:
            res.failed += 1
            _error(res, str(e))
            log.warning("import_record_malformed", integration_id=integration_id, entity=res.entity, error=str(e))
            return
        except Exception as e:
            res.failed += 1
            _error(res, f"{type(e).__name__}: {e}")
            log.error("import_record_failed", integration_id=integration_id, entity=res.entity, exc_info=True)
            return
        res.synced += 1


def _error(res: EntitySyncResult, msg: str) -> None:
    if len(res.errors) < MAX_ERRORS_KEPT:
        res.errors.append(msg)


def build_task(importer: BulkImporter | None = None, settings: Settings | None = None) -> PeriodicTask:
    settings = settings or di[Settings]
    importer = importer or di[BulkImporter]
    return PeriodicTask("bulk-importer", importer.run_all, settings.import_interval_s)
