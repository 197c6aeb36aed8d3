"""Repositório da fila de sincronização (SyncQueueStore).

Toda transição de status é uma escrita condicional (UPDATE ... WHERE status = ...),
nunca leitura seguida de escrita sem guarda: é isso que permite vários workers
disputarem a mesma fila sem lock distribuído.

Máquina de estados:
    PENDING → PROCESSING → SUCCESS
                         → PENDING (backoff, attempts < max_attempts)
                         → FAILED  (attempts esgotados ou erro permanente)
    FAILED  → PENDING (retry manual)
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from kink import di
from sqlalchemy import select, update, delete, func, and_, or_, exists
from sqlalchemy.orm import aliased
from ..core.clock import utcnow
from ..core.logging import get_logger
from .models import (
    SyncQueueItem, ACTIONS, CREATE_CLIENT, UPDATE_CLIENT, CREATE_CONTRACT, CANCEL_CONTRACT,
    PENDING, PROCESSING, SUCCESS, FAILED, STATUSES,
)

log = get_logger()

DEFAULT_MAX_ATTEMPTS = 5
MAX_ATTEMPTS_BY_ACTION = {
    CREATE_CLIENT: DEFAULT_MAX_ATTEMPTS,
    UPDATE_CLIENT: DEFAULT_MAX_ATTEMPTS,
    CREATE_CONTRACT: DEFAULT_MAX_ATTEMPTS,
    CANCEL_CONTRACT: DEFAULT_MAX_ATTEMPTS,
}
LAST_ERROR_MAX = 2000
ERROR_LOG_MAX = 8000


@dataclass(frozen=True)
class BackoffPolicy:
    """backoff(n) = min(base * 2^(n-1), max), em segundos."""
    base_s: float = 30
    max_s: float = 3600

    def delay(self, attempts: int) -> timedelta:
        n = max(attempts, 1)
        return timedelta(seconds=min(self.base_s * (2 ** (n - 1)), self.max_s))


class SyncQueueStore:
    """Fila durável FIFO-com-retry persistida em `sync_queue`."""

    def __init__(
        self,
        session_factory=None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: dict[str, int] | None = None,
    ):
        self.Session = session_factory or di["session_factory"]
        self.backoff = backoff or BackoffPolicy()
        self.clock = clock
        self.max_attempts = {**MAX_ATTEMPTS_BY_ACTION, **(max_attempts or {})}

    # ---------- Enfileirar ----------
    def enqueue(
        self,
        integration_id: str,
        action: str,
        payload: dict,
        *,
        subject_key: str | None = None,
        scheduled_for: datetime | None = None,
    ) -> SyncQueueItem:
        """Cria item PENDING com snapshot imutável do payload."""
        if action not in ACTIONS:
            raise ValueError(f"ação desconhecida: {action}")
        now = self.clock()
        snapshot = json.loads(json.dumps(payload))
        with self.Session() as s, s.begin():
            item = SyncQueueItem(
                integration_id=integration_id,
                action=action,
                payload=snapshot,
                status=PENDING,
                attempts=0,
                max_attempts=self.max_attempts.get(action, DEFAULT_MAX_ATTEMPTS),
                subject_key=subject_key,
                scheduled_for=scheduled_for or now,
                created_at=now,
                updated_at=now,
            )
            s.add(item)
            s.flush()
        log.info("queue_enqueued", queue_id=item.id, integration_id=integration_id, action=action, subject_key=subject_key)
        return item

    # ---------- Claim ----------
    def claim_batch(self, integration_id: str, limit: int) -> list[SyncQueueItem]:
        """Move até `limit` itens elegíveis para PROCESSING, do mais antigo ao mais novo.

        Um item fica de fora enquanto existir item mais antigo do mesmo
        `subject_key` ainda PENDING/PROCESSING (ordem por cliente).
        """
        if limit <= 0:
            return []
        now = self.clock()
        older = aliased(SyncQueueItem)
        blocked = exists().where(
            older.integration_id == SyncQueueItem.integration_id,
            older.subject_key == SyncQueueItem.subject_key,
            older.status.in_((PENDING, PROCESSING)),
            or_(
                older.created_at < SyncQueueItem.created_at,
                and_(older.created_at == SyncQueueItem.created_at, older.id < SyncQueueItem.id),
            ),
        )
        with self.Session() as s, s.begin():
            candidates = s.execute(
                select(SyncQueueItem.id, SyncQueueItem.subject_key)
                .where(
                    SyncQueueItem.integration_id == integration_id,
                    SyncQueueItem.status == PENDING,
                    SyncQueueItem.scheduled_for <= now,
                    ~blocked,
                )
                .order_by(SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
                .limit(limit * 3)
            ).all()
            claimed: list[int] = []
            subjects: set[str] = set()
            for cid, subject in candidates:
                if len(claimed) >= limit:
                    break
                if subject and subject in subjects:
                    continue
                res = s.execute(
                    update(SyncQueueItem)
                    .where(
                        SyncQueueItem.id == cid,
                        SyncQueueItem.status == PENDING,
                        SyncQueueItem.scheduled_for <= now,
                    )
                    .values(status=PROCESSING, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    claimed.append(cid)
                    if subject:
                        subjects.add(subject)
            if not claimed:
                return []
            items = s.execute(
                select(SyncQueueItem)
                .where(SyncQueueItem.id.in_(claimed))
                .order_by(SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
            ).scalars().all()
        log.info("queue_claimed", integration_id=integration_id, count=len(items), ids=claimed)
        return list(items)

    # ---------- Resultado ----------
    def mark_success(self, queue_id: int) -> bool:
        now = self.clock()
        with self.Session() as s, s.begin():
            res = s.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == queue_id, SyncQueueItem.status == PROCESSING)
                .values(status=SUCCESS, last_error=None, processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        ok = res.rowcount == 1
        if ok:
            log.info("queue_success", queue_id=queue_id)
        else:
            log.warning("queue_transition_ignored", queue_id=queue_id, to=SUCCESS)
        return ok

    def mark_failure(self, queue_id: int, error: str) -> str | None:
        """Registra falha transitória: volta a PENDING com backoff ou vai a FAILED.

        :return: novo status, ou None se o item não estava em PROCESSING.
        """
        return self._fail(queue_id, error, permanent=False)

    def mark_permanent_failure(self, queue_id: int, error: str) -> str | None:
        """Falha permanente: FAILED imediatamente, sem consumir o restante das tentativas."""
        return self._fail(queue_id, error, permanent=True)

    def _fail(self, queue_id: int, error: str, permanent: bool) -> str | None:
        now = self.clock()
        error = (error or "erro desconhecido")[:LAST_ERROR_MAX]
        with self.Session() as s, s.begin():
            item = s.get(SyncQueueItem, queue_id)
            if item is None or item.status != PROCESSING:
                log.warning("queue_transition_ignored", queue_id=queue_id, to=FAILED if permanent else "retry")
                return None
            attempts = item.attempts + 1
            values = {
                "attempts": attempts,
                "last_error": error,
                "error_log": _append_error(item.error_log, now, attempts, error),
                "updated_at": now,
            }
            if permanent or attempts >= item.max_attempts:
                values.update(status=FAILED, processed_at=now)
            else:
                values.update(status=PENDING, scheduled_for=now + self.backoff.delay(attempts))
            res = s.execute(
                update(SyncQueueItem)
                .where(
                    SyncQueueItem.id == queue_id,
                    SyncQueueItem.status == PROCESSING,
                    SyncQueueItem.attempts == item.attempts,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                log.warning("queue_transition_lost", queue_id=queue_id)
                return None
        status = values["status"]
        log.warning(
            "queue_failure",
            queue_id=queue_id,
            attempts=attempts,
            max_attempts=item.max_attempts,
            status=status,
            permanent=permanent,
            scheduled_for=values.get("scheduled_for").isoformat() if "scheduled_for" in values else None,
            error=error,
        )
        return status

    # ---------- Operador ----------
    def retry(self, queue_id: int, integration_id: str | None = None) -> bool:
        """FAILED → PENDING, attempts=0, elegível imediatamente."""
        now = self.clock()
        conds = [SyncQueueItem.id == queue_id, SyncQueueItem.status == FAILED]
        if integration_id:
            conds.append(SyncQueueItem.integration_id == integration_id)
        with self.Session() as s, s.begin():
            res = s.execute(
                update(SyncQueueItem)
                .where(*conds)
                .values(status=PENDING, attempts=0, scheduled_for=now, last_error=None, processed_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        ok = res.rowcount == 1
        if ok:
            log.info("queue_retry", queue_id=queue_id)
        return ok

    def delete(self, queue_id: int, integration_id: str | None = None) -> bool:
        """Remove item apenas se ainda PENDING (trabalho em voo ou concluído fica para auditoria)."""
        conds = [SyncQueueItem.id == queue_id, SyncQueueItem.status == PENDING]
        if integration_id:
            conds.append(SyncQueueItem.integration_id == integration_id)
        with self.Session() as s, s.begin():
            res = s.execute(delete(SyncQueueItem).where(*conds).execution_options(synchronize_session=False))
        ok = res.rowcount == 1
        if ok:
            log.info("queue_deleted", queue_id=queue_id)
        return ok

    def reset_stuck(self, older_than_minutes: int) -> int:
        """Devolve a PENDING itens presos em PROCESSING (worker morto no meio da chamada)."""
        now = self.clock()
        cutoff = now - timedelta(minutes=older_than_minutes)
        with self.Session() as s, s.begin():
            res = s.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.status == PROCESSING, SyncQueueItem.updated_at < cutoff)
                .values(status=PENDING, scheduled_for=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        count = res.rowcount or 0
        if count:
            log.warning("queue_reset_stuck", count=count, older_than_minutes=older_than_minutes)
        return count

    # ---------- Consultas ----------
    def get(self, queue_id: int, integration_id: str | None = None) -> SyncQueueItem | None:
        with self.Session() as s:
            item = s.get(SyncQueueItem, queue_id)
            if item is None or (integration_id and item.integration_id != integration_id):
                return None
            return item

    def list_items(
        self,
        integration_id: str,
        status: str | None = None,
        action: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[SyncQueueItem], int]:
        """Lista itens (mais recentes primeiro) e total para paginação."""
        conds = [SyncQueueItem.integration_id == integration_id]
        if status:
            conds.append(SyncQueueItem.status == status)
        if action:
            conds.append(SyncQueueItem.action == action)
        with self.Session() as s:
            rows = s.execute(
                select(SyncQueueItem)
                .where(*conds)
                .order_by(SyncQueueItem.created_at.desc(), SyncQueueItem.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            total = s.execute(select(func.count()).select_from(SyncQueueItem).where(*conds)).scalar_one()
        return list(rows), total

    def stats(self, integration_id: str) -> dict:
        """Contagem por status, atividade recente e volume por ação nas últimas 24h."""
        since = self.clock() - timedelta(hours=24)
        with self.Session() as s:
            by_status = dict(
                s.execute(
                    select(SyncQueueItem.status, func.count())
                    .where(SyncQueueItem.integration_id == integration_id)
                    .group_by(SyncQueueItem.status)
                ).all()
            )
            def last(*conds):
                return s.execute(
                    select(func.max(SyncQueueItem.processed_at)).where(SyncQueueItem.integration_id == integration_id, *conds)
                ).scalar()
            last_processed = last(SyncQueueItem.status.in_((SUCCESS, FAILED)))
            last_success = last(SyncQueueItem.status == SUCCESS)
            last_failed = last(SyncQueueItem.status == FAILED)
            by_action = s.execute(
                select(SyncQueueItem.action, func.count())
                .where(SyncQueueItem.integration_id == integration_id, SyncQueueItem.created_at >= since)
                .group_by(SyncQueueItem.action)
            ).all()
        counts = {st.lower(): int(by_status.get(st, 0)) for st in STATUSES}
        return {
            **counts,
            "total": sum(counts.values()),
            "recentActivity": {
                "lastProcessed": last_processed.isoformat() if last_processed else None,
                "lastSuccess": last_success.isoformat() if last_success else None,
                "lastFailed": last_failed.isoformat() if last_failed else None,
            },
            "recentByAction": [{"action": a, "count": int(c)} for a, c in by_action],
        }


def _append_error(current: str | None, now: datetime, attempt: int, error: str) -> str:
    line = f"[{now.isoformat()}] #{attempt} {error}"
    text = f"{current}\n{line}" if current else line
    return text[-ERROR_LOG_MAX:]
