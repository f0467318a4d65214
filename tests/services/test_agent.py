"""Tests for the agent backends.

NewRelicAgent is tested against stand-ins patched onto newrelic.agent:
the real agent would try to reach the NewRelic collector.
"""

from __future__ import annotations

from types import SimpleNamespace

import newrelic.agent
import pytest

from apm_instrumenter.services.agent import InMemoryAgent, NewRelicAgent, TransactionAgent


def test_in_memory_agent_records_calls_in_order() -> None:
    agent = InMemoryAgent()
    txn_id = agent.begin_transaction()
    agent.set_transaction_request_url(txn_id, "/a?b=1")
    agent.set_transaction_name(txn_id, "GET /a")
    agent.add_transaction_attribute(txn_id, "QUERY_STRING", "b=1")
    agent.end_transaction(txn_id)

    assert agent.operations() == [
        "begin_transaction",
        "set_transaction_request_url",
        "set_transaction_name",
        "add_transaction_attribute",
        "end_transaction",
    ]
    txn = agent.transactions[txn_id]
    assert txn.url == "/a?b=1"
    assert txn.name == "GET /a"
    assert txn.attributes == [("QUERY_STRING", "b=1")]
    assert txn.ended


def test_in_memory_agent_issues_distinct_ids() -> None:
    agent = InMemoryAgent()
    assert agent.begin_transaction() != agent.begin_transaction()


def test_in_memory_agent_reject_returns_negative_id() -> None:
    agent = InMemoryAgent(reject=True)
    assert agent.begin_transaction() < 0
    assert agent.transactions == {}


def test_both_backends_satisfy_protocol() -> None:
    assert isinstance(InMemoryAgent(), TransactionAgent)
    assert issubclass(NewRelicAgent, TransactionAgent)


class _FakeWebTransaction:
    instances: list[_FakeWebTransaction] = []
    enabled_default = True

    def __init__(self, application, name) -> None:
        self.application = application
        self.enabled = self.enabled_default
        self.entered = False
        self.exited = False
        self.name: tuple | None = None
        self.custom: list[tuple[str, str]] = []
        _FakeWebTransaction.instances.append(self)

    def __enter__(self):
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.exited = True

    def set_transaction_name(self, name, group=None, priority=None) -> None:
        self.name = (name, group)

    def add_custom_attribute(self, key, value) -> None:
        self.custom.append((key, value))


@pytest.fixture
def fake_newrelic(monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    settings = SimpleNamespace(license_key=None, app_name=None)
    application = object()
    registered: list = []

    def register_application(name=None, timeout=None):
        registered.append((name, timeout))
        return application

    _FakeWebTransaction.instances = []
    _FakeWebTransaction.enabled_default = True
    monkeypatch.setattr(newrelic.agent, "initialize", lambda *a, **k: None)
    monkeypatch.setattr(newrelic.agent, "global_settings", lambda: settings)
    monkeypatch.setattr(newrelic.agent, "register_application", register_application)
    monkeypatch.setattr(newrelic.agent, "WebTransaction", _FakeWebTransaction)
    return SimpleNamespace(settings=settings, application=application, registered=registered)


def test_newrelic_agent_registers_application(fake_newrelic: SimpleNamespace) -> None:
    NewRelicAgent("key-123", "My App", startup_timeout=2.5)
    assert fake_newrelic.settings.license_key == "key-123"
    assert fake_newrelic.settings.app_name == "My App"
    assert fake_newrelic.registered == [("My App", 2.5)]


def test_newrelic_agent_transaction_lifecycle(fake_newrelic: SimpleNamespace) -> None:
    agent = NewRelicAgent("key", "app")
    txn_id = agent.begin_transaction()
    assert txn_id >= 0

    agent.set_transaction_request_url(txn_id, "/pages/new/42?x=1")
    agent.set_transaction_name(txn_id, "GET /pages/new")
    agent.add_transaction_attribute(txn_id, "User-Agent:", "test-agent")
    agent.end_transaction(txn_id)

    web_txn = _FakeWebTransaction.instances[0]
    assert web_txn.application is fake_newrelic.application
    assert web_txn.entered and web_txn.exited
    assert web_txn.name == ("GET /pages/new", "Uri")
    assert ("User-Agent:", "test-agent") in web_txn.custom
    assert ("request.url", "/pages/new/42?x=1") in web_txn.custom


def test_newrelic_agent_disabled_transaction_is_declined(fake_newrelic: SimpleNamespace) -> None:
    _FakeWebTransaction.enabled_default = False
    agent = NewRelicAgent("key", "app")
    assert agent.begin_transaction() == -1


def test_newrelic_agent_ids_are_distinct(fake_newrelic: SimpleNamespace) -> None:
    agent = NewRelicAgent("key", "app")
    first = agent.begin_transaction()
    second = agent.begin_transaction()
    assert first != second
    agent.end_transaction(second)
    agent.end_transaction(first)
    assert all(t.exited for t in _FakeWebTransaction.instances)
