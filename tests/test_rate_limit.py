# tests/test_rate_limit.py
# Espaçamento mínimo entre chamadas por integração

from oletv_sync.connectors.oletv.rate_limit import GateRegistry, IntervalGate


class FakeTime:
    """monotonic + sleep simulados: sleep avança o relógio."""

    def __init__(self):
        self.t = 100.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.t

    def sleep(self, s: float) -> None:
        self.sleeps.append(s)
        self.t += s


class TestIntervalGate:
    """Gate de uma integração"""

    def test_first_call_does_not_wait(self):
        ft = FakeTime()
        gate = IntervalGate(0.3, clock=ft.clock, sleep=ft.sleep)
        assert gate.wait() == 0.0
        assert ft.sleeps == []

    def test_back_to_back_calls_are_spaced(self):
        """Segunda chamada imediata espera o intervalo inteiro"""
        ft = FakeTime()
        gate = IntervalGate(0.3, clock=ft.clock, sleep=ft.sleep)
        gate.wait()
        waited = gate.wait()
        assert abs(waited - 0.3) < 1e-9
        assert len(ft.sleeps) == 1

    def test_only_remaining_interval_is_waited(self):
        ft = FakeTime()
        gate = IntervalGate(0.3, clock=ft.clock, sleep=ft.sleep)
        gate.wait()
        ft.t += 0.2
        assert abs(gate.wait() - 0.1) < 1e-9

    def test_no_wait_after_interval_elapsed(self):
        ft = FakeTime()
        gate = IntervalGate(0.3, clock=ft.clock, sleep=ft.sleep)
        gate.wait()
        ft.t += 1
        assert gate.wait() == 0.0

    def test_zero_interval_never_waits(self):
        ft = FakeTime()
        gate = IntervalGate(0, clock=ft.clock, sleep=ft.sleep)
        for _ in range(3):
            assert gate.wait() == 0.0


class TestGateRegistry:
    """Um gate por integração"""

    def test_same_integration_shares_gate(self):
        reg = GateRegistry(0.3)
        assert reg.get("a") is reg.get("a")

    def test_integrations_are_independent(self):
        """Chamada na integração A não atrasa a B"""
        ft = FakeTime()
        reg = GateRegistry(0.3, clock=ft.clock, sleep=ft.sleep)
        reg.get("a").wait()
        assert reg.get("b").wait() == 0.0
        assert reg.get("a") is not reg.get("b")
