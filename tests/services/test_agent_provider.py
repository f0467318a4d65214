"""Tests for the shared agent handle.

The important property is single-flight: however many requests race on
a cold process, the agent factory runs once.
"""

from __future__ import annotations

import logging
import threading
import time

import pytest

from apm_instrumenter.services.agent import InMemoryAgent
from apm_instrumenter.services.agent_provider import AgentProvider, get_agent_provider
from tests.conftest import make_config


def test_factory_runs_once_under_concurrent_first_use() -> None:
    calls = 0
    calls_lock = threading.Lock()

    def slow_factory() -> InMemoryAgent:
        nonlocal calls
        with calls_lock:
            calls += 1
        time.sleep(0.05)
        return InMemoryAgent()

    provider = AgentProvider(slow_factory)
    barrier = threading.Barrier(8)
    results: list = []

    def worker() -> None:
        barrier.wait()
        results.append(provider.get())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert calls == 1
    assert len(results) == 8
    assert all(r is results[0] for r in results)


def test_ready_flips_after_first_get() -> None:
    provider = AgentProvider(InMemoryAgent)
    assert provider.ready is False
    provider.get()
    assert provider.ready is True


def test_failed_factory_yields_none_and_is_not_retried(
    caplog: pytest.LogCaptureFixture,
) -> None:
    calls = 0

    def broken() -> InMemoryAgent:
        nonlocal calls
        calls += 1
        raise RuntimeError("license rejected")

    provider = AgentProvider(broken)
    with caplog.at_level(logging.ERROR, logger="apm_instrumenter.services.agent_provider"):
        assert provider.get() is None
        assert provider.get() is None

    assert calls == 1
    assert provider.ready is True
    assert any("initialization failed" in m for m in caplog.messages)


def test_registry_shares_provider_per_app() -> None:
    config = make_config()
    first = get_agent_provider(config, factory=InMemoryAgent)
    second = get_agent_provider(config)
    assert first is second
    assert first.get() is second.get()


def test_registry_separates_apps() -> None:
    a = get_agent_provider(make_config(app_name="svc-a"), factory=InMemoryAgent)
    b = get_agent_provider(make_config(app_name="svc-b"), factory=InMemoryAgent)
    assert a is not b
