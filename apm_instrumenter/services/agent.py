"""APM agent backends.

THE AGENT CONTRACT
--------------------
The instrumenter never talks to an APM backend directly.  It drives an
agent through five synchronous calls:

  begin_transaction()                       -> int id (negative = failed)
  set_transaction_request_url(id, uri)
  set_transaction_name(id, name)
  add_transaction_attribute(id, key, value)
  end_transaction(id)

Everything else (batching, the wire protocol, retries, truncating
attribute keys/values to 256 bytes) is the agent's job.

Two implementations follow the same protocol:

  NewRelicAgent   production, adapts the `newrelic` Python agent.
  InMemoryAgent   tests and local dev, records every call.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import newrelic.agent

logger = logging.getLogger(__name__)


@runtime_checkable
class TransactionAgent(Protocol):
    def begin_transaction(self) -> int:
        """Open a transaction.  A negative id means the agent declined."""
        ...

    def set_transaction_request_url(self, txn_id: int, url: str) -> None: ...

    def set_transaction_name(self, txn_id: int, name: str) -> None: ...

    def add_transaction_attribute(self, txn_id: int, key: str, value: str) -> None: ...

    def end_transaction(self, txn_id: int) -> None: ...


@dataclass
class RecordedTransaction:
    txn_id: int
    name: str | None = None
    url: str | None = None
    attributes: list[tuple[str, str]] = field(default_factory=list)
    end_count: int = 0

    @property
    def ended(self) -> bool:
        return self.end_count > 0

    def attribute(self, key: str) -> str | None:
        for k, v in self.attributes:
            if k == key:
                return v
        return None


class InMemoryAgent:
    """Agent that records calls instead of reporting them.

    ``calls`` keeps every call in order as (operation, *args) tuples, so
    tests can assert on ordering relative to other events.  With
    reject=True, begin_transaction returns -1 like an agent that has not
    connected yet.
    """

    def __init__(self, *, reject: bool = False) -> None:
        self.reject = reject
        self.calls: list[tuple[Any, ...]] = []
        self.transactions: dict[int, RecordedTransaction] = {}
        self._ids = itertools.count()
        self._lock = threading.Lock()

    def begin_transaction(self) -> int:
        with self._lock:
            self.calls.append(("begin_transaction",))
            if self.reject:
                return -1
            txn_id = next(self._ids)
            self.transactions[txn_id] = RecordedTransaction(txn_id=txn_id)
        logger.debug("Transaction %d begun", txn_id)
        return txn_id

    def set_transaction_request_url(self, txn_id: int, url: str) -> None:
        with self._lock:
            self.calls.append(("set_transaction_request_url", txn_id, url))
            self.transactions[txn_id].url = url

    def set_transaction_name(self, txn_id: int, name: str) -> None:
        with self._lock:
            self.calls.append(("set_transaction_name", txn_id, name))
            self.transactions[txn_id].name = name

    def add_transaction_attribute(self, txn_id: int, key: str, value: str) -> None:
        with self._lock:
            self.calls.append(("add_transaction_attribute", txn_id, key, value))
            self.transactions[txn_id].attributes.append((key, value))

    def end_transaction(self, txn_id: int) -> None:
        with self._lock:
            self.calls.append(("end_transaction", txn_id))
            self.transactions[txn_id].end_count += 1
        logger.debug("Transaction %d ended", txn_id)

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]


class NewRelicAgent:
    """Adapter from the id-based agent contract to the newrelic Python agent.

    The newrelic agent is process-wide: ``initialize()`` and
    ``register_application()`` must run once per process, which is why
    instances are built through an AgentProvider and never per request.

    Each transaction is a ``newrelic.agent.WebTransaction`` entered in
    begin_transaction and exited in end_transaction.  Ids are plain
    counters; the WebTransaction objects never leave this class.
    """

    def __init__(self, license_key: str, app_name: str, *, startup_timeout: float = 10.0) -> None:
        newrelic.agent.initialize()
        settings = newrelic.agent.global_settings()
        settings.license_key = license_key
        settings.app_name = app_name

        self._application = newrelic.agent.register_application(
            name=app_name, timeout=startup_timeout
        )
        self._transactions: dict[int, Any] = {}
        self._ids = itertools.count()
        self._lock = threading.Lock()
        logger.info("NewRelic agent registered for app %r", app_name)

    def begin_transaction(self) -> int:
        transaction = newrelic.agent.WebTransaction(self._application, None)
        transaction.__enter__()
        if not transaction.enabled:
            return -1

        with self._lock:
            txn_id = next(self._ids)
            self._transactions[txn_id] = transaction
        return txn_id

    def set_transaction_request_url(self, txn_id: int, url: str) -> None:
        self._transactions[txn_id].add_custom_attribute("request.url", url)

    def set_transaction_name(self, txn_id: int, name: str) -> None:
        self._transactions[txn_id].set_transaction_name(name, group="Uri")

    def add_transaction_attribute(self, txn_id: int, key: str, value: str) -> None:
        self._transactions[txn_id].add_custom_attribute(key, value)

    def end_transaction(self, txn_id: int) -> None:
        with self._lock:
            transaction = self._transactions.pop(txn_id)
        transaction.__exit__(None, None, None)
