from __future__ import annotations

import pytest

from streamchat.core.errors import Conflict
from streamchat.core.registry import CancellationRegistry, CancelOutcome
from streamchat.core.types import CancelReason


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_cancel_returns_true_then_false() -> None:
    registry = CancellationRegistry()
    token = registry.register("req-1")

    assert registry.cancel("req-1") is True
    assert registry.cancel("req-1") is False
    assert token.cancelled
    assert token.reason is CancelReason.USER


def test_cancel_unknown_id_returns_false() -> None:
    registry = CancellationRegistry()

    assert registry.cancel("missing") is False
    assert registry.try_cancel("missing") is CancelOutcome.UNKNOWN


def test_release_is_idempotent_and_leaves_a_tombstone() -> None:
    registry = CancellationRegistry()
    registry.register("req-1")

    registry.release("req-1")
    registry.release("req-1")

    assert "req-1" not in registry
    assert registry.try_cancel("req-1") is CancelOutcome.TERMINAL
    assert registry.cancel("req-1") is False


def test_registering_an_active_id_twice_conflicts() -> None:
    registry = CancellationRegistry()
    registry.register("req-1")

    with pytest.raises(Conflict):
        registry.register("req-1")


def test_active_for_lists_entries_of_one_conversation() -> None:
    registry = CancellationRegistry()
    registry.register("a", conversation_id="conv-1", message_key="m1", version_id="v1")
    registry.register("b", conversation_id="conv-2")

    entries = registry.active_for("conv-1")

    assert [e.request_id for e in entries] == ["a"]
    assert entries[0].version_id == "v1"


def test_sweep_times_out_idle_entries_and_forgets_old_tombstones() -> None:
    clock = FakeClock()
    registry = CancellationRegistry(idle_timeout=60, tombstone_ttl=30, clock=clock)
    old = registry.register("old")
    clock.now += 45
    fresh = registry.register("fresh")
    clock.now += 20

    assert registry.sweep() == ["old"]
    assert old.reason is CancelReason.TIMEOUT
    assert not fresh.cancelled
    assert registry.request_ids() == ["fresh"]
    assert registry.try_cancel("old") is CancelOutcome.TERMINAL

    clock.now += 30
    registry.sweep()
    assert registry.try_cancel("old") is CancelOutcome.UNKNOWN
