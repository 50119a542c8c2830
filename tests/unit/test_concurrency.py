"""Unit tests for the admission gate."""
import pytest

from concurrency import ConcurrencyGate


class TestConcurrencyGate:
    def test_capacity(self):
        gate = ConcurrencyGate(2)
        assert gate.has_capacity()
        gate.register("a")
        gate.register("b")
        assert not gate.has_capacity()
        assert gate.active == 2

        gate.unregister("a")
        assert gate.has_capacity()
        assert not gate.is_active("a")
        assert gate.is_active("b")

    def test_register_and_unregister_are_idempotent(self):
        gate = ConcurrencyGate()
        gate.register("a")
        gate.register("a")
        assert gate.active == 1

        gate.unregister("a")
        gate.unregister("a")
        gate.unregister("never-registered")
        assert gate.active == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            ConcurrencyGate(0)
