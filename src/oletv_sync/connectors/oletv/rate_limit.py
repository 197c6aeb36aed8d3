"""Espaçamento mínimo entre chamadas à Olé, por integração."""
from __future__ import annotations
import threading
import time
from typing import Callable

class IntervalGate:
    """Garante `min_interval_s` entre o início de duas chamadas consecutivas.

    Thread-safe: chamadores concorrentes da mesma integração são serializados.
    """

    def __init__(
        self,
        min_interval_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval_s = min_interval_s
        self.clock = clock
        self.sleep = sleep
        self._lock = threading.Lock()
        self._last: float | None = None

    def wait(self) -> float:
        """Bloqueia até a próxima janela livre; retorna o tempo esperado."""
        with self._lock:
            waited = 0.0
            if self._last is not None:
                remaining = self.min_interval_s - (self.clock() - self._last)
                if remaining > 0:
                    self.sleep(remaining)
                    waited = remaining
            self._last = self.clock()
            return waited

class GateRegistry:
    """Um IntervalGate por integration_id, compartilhado por todos os clientes."""

    def __init__(self, min_interval_s: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval_s = min_interval_s
        self.clock = clock
        self.sleep = sleep
        self._gates: dict[str, IntervalGate] = {}
        self._lock = threading.Lock()

    def get(self, integration_id: str) -> IntervalGate:
        with self._lock:
            gate = self._gates.get(integration_id)
            if gate is None:
                gate = IntervalGate(self.min_interval_s, clock=self.clock, sleep=self.sleep)
                self._gates[integration_id] = gate
            return gate
