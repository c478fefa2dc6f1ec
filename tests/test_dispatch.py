from __future__ import annotations

import threading

import allure

from agent_hive.orchestrator.dispatch import (
    DeferredDispatcher,
    InlineDispatcher,
    ThreadPoolDispatcher,
)

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("Dispatch"),
]


def test_thread_pool_runs_units_and_survives_failures() -> None:
    dispatcher = ThreadPoolDispatcher(max_workers=2)
    done = threading.Event()

    def boom() -> None:
        raise RuntimeError("unit failed")

    try:
        dispatcher.submit(boom)
        dispatcher.submit(done.set)
        assert done.wait(timeout=5)
    finally:
        dispatcher.shutdown()


def test_thread_pool_drops_units_after_shutdown() -> None:
    dispatcher = ThreadPoolDispatcher(max_workers=1)
    calls: list[int] = []
    dispatcher.submit(calls.append, 1, delay_seconds=60)

    dispatcher.shutdown()
    dispatcher.submit(calls.append, 2)

    assert calls == []


def test_inline_runs_immediately_and_keeps_delayed_units() -> None:
    dispatcher = InlineDispatcher()
    calls: list[str] = []

    dispatcher.submit(calls.append, "now")
    dispatcher.submit(calls.append, "later", delay_seconds=30)

    assert calls == ["now"]
    assert len(dispatcher.delayed) == 1
    dispatcher.shutdown()
    assert dispatcher.delayed == []


def test_deferred_drain_runs_nested_units_in_order() -> None:
    dispatcher = DeferredDispatcher()
    calls: list[str] = []

    def parent() -> None:
        calls.append("parent")
        dispatcher.submit(calls.append, "child")

    dispatcher.submit(parent)
    dispatcher.submit(calls.append, "sibling")
    dispatcher.submit(calls.append, "retry", delay_seconds=30)

    assert dispatcher.drain() == 3
    assert calls == ["parent", "sibling", "child"]
    assert dispatcher.pending == 0
    assert len(dispatcher.delayed) == 1
    assert dispatcher.drain(include_delayed=True) == 1
    assert calls[-1] == "retry"


def test_deferred_drain_honours_unit_limit() -> None:
    dispatcher = DeferredDispatcher()
    calls: list[int] = []
    for value in range(3):
        dispatcher.submit(calls.append, value)

    assert dispatcher.drain(max_units=2) == 2
    assert calls == [0, 1]
    assert dispatcher.pending == 1
