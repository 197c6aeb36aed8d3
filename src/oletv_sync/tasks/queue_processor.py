"""Processador periódico da fila: claim → execute → mark_*, por integração."""
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from kink import di
from sqlalchemy.exc import SQLAlchemyError
from ..core.errors import SyncError, is_permanent
from ..core.logging import bound_integration, get_logger, set_trace_id, trace_id_ctx
from ..core.settings import Settings
from ..domain.services.orchestrator import Orchestrator
from ..ports.interfaces import RunSummary, QueueExecutor
from ..repo import integrations as integrations_repo
from ..repo.models import PENDING
from ..repo.queue_store import SyncQueueStore
from .periodic import PeriodicTask

log = get_logger()

class QueueProcessor:
    """Uma passada processa até `queue_batch_size` itens de cada integração ativa."""

    def __init__(
        self,
        store: SyncQueueStore | None = None,
        executor: QueueExecutor | None = None,
        settings: Settings | None = None,
        session_factory=None,
    ):
        self.s = settings or di[Settings]
        self.store = store or di[SyncQueueStore]
        self.executor = executor or di[Orchestrator]
        self.Session = session_factory or di["session_factory"]

    def process_once(self) -> RunSummary:
        """Nunca levanta: falha de infraestrutura pula a passada, falha de item vai para o item."""
        summary = RunSummary()
        try:
            self.store.reset_stuck(self.s.stuck_processing_minutes)
            integration_ids = [i.id for i in integrations_repo.list_active(session_factory=self.Session)]
        except SQLAlchemyError:
            log.error("processor_db_unavailable", exc_info=True)
            summary.skipped = True
            return summary
        summary.integrations = len(integration_ids)
        if self.s.processor_max_workers > 1 and len(integration_ids) > 1:
            trace = trace_id_ctx.get()
            with ThreadPoolExecutor(max_workers=self.s.processor_max_workers, thread_name_prefix="oletv-proc") as pool:
                parts = list(pool.map(lambda iid: self._process_integration(iid, trace), integration_ids))
        else:
            parts = [self._process_integration(iid) for iid in integration_ids]
        for part in parts:
            summary.claimed += part.claimed
            summary.processed += part.processed
            summary.failed += part.failed
            summary.retried += part.retried
        log.info("processor_run_done", **summary.model_dump())
        return summary

    def _process_integration(self, integration_id: str, trace: str | None = None) -> RunSummary:
        if trace:
            set_trace_id(trace)
        with bound_integration(integration_id):
            return self._drain(integration_id)

    def _drain(self, integration_id: str) -> RunSummary:
        part = RunSummary(integrations=1)
        try:
            items = self.store.claim_batch(integration_id, self.s.queue_batch_size)
        except SQLAlchemyError:
            log.error("processor_claim_failed", integration_id=integration_id, exc_info=True)
            return part
        part.claimed = len(items)
        for item in items:
            log.info("queue_item_started", queue_id=item.id, action=item.action, attempt=item.attempts + 1)
            try:
                self.executor.execute(item)
            except Exception as e:
                self._record_failure(item, e, part)
                continue
            try:
                if self.store.mark_success(item.id):
                    part.processed += 1
            except SQLAlchemyError:
                log.error("processor_mark_failed", queue_id=item.id, exc_info=True)
        return part

    def _record_failure(self, item, exc: Exception, part: RunSummary) -> None:
        error = str(exc) or type(exc).__name__
        try:
            if is_permanent(exc):
                self.store.mark_permanent_failure(item.id, error)
                part.failed += 1
                log.warning("queue_item_permanent_failure", queue_id=item.id, action=item.action, error=error)
                return
            status = self.store.mark_failure(item.id, error)
        except SQLAlchemyError:
            log.error("processor_mark_failed", queue_id=item.id, exc_info=True)
            return
        if status == PENDING:
            part.retried += 1
        else:
            part.failed += 1
        log.warning(
            "queue_item_failure", queue_id=item.id, action=item.action, status=status, error=error,
            exc_info=None if isinstance(exc, SyncError) else exc,
        )


def build_task(processor: QueueProcessor | None = None, settings: Settings | None = None) -> PeriodicTask:
    settings = settings or di[Settings]
    processor = processor or QueueProcessor(settings=settings)
    return PeriodicTask("queue-processor", processor.process_once, settings.queue_interval_s)
