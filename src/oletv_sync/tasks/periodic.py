"""Tarefa periódica cancelável (thread + Event)."""
from __future__ import annotations
import threading
from typing import Any, Callable
from ..core.logging import get_logger, set_trace_id

log = get_logger()

class PeriodicTask:
    """Executa `fn` a cada `interval_s` até `stop()`.

    O intervalo é medido entre o fim de uma execução e o início da próxima,
    então execuções nunca se sobrepõem.
    """

    def __init__(self, name: str, fn: Callable[[], Any], interval_s: float):
        self.name = name
        self.fn = fn
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            log.warning("task_already_running", task=self.name)
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        log.info("task_started", task=self.name, interval_s=self.interval_s)

    def stop(self, timeout: float | None = 30) -> None:
        """Sinaliza parada e aguarda a execução corrente terminar."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        log.info("task_stopped", task=self.name, runs=self.runs)

    def wait(self, timeout: float | None = None) -> bool:
        """Bloqueia até stop() ser chamado; True se parou."""
        return self._stop.wait(timeout)

    def run_once(self) -> Any:
        set_trace_id()
        try:
            return self.fn()
        finally:
            self.runs += 1

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                log.error("task_run_failed", task=self.name, exc_info=True)
            self._stop.wait(self.interval_s)
