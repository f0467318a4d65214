"""Shared, lazily-initialized agent handle.

WHY ONE HANDLE PER PROCESS
----------------------------
An APM agent embeds a collector and registers the application with the
backend.  Doing that per request (or per middleware instance) would open
a new collector each time.  The handle is built on first use and shared
by every request afterwards.

SINGLE-FLIGHT INITIALIZATION
------------------------------
Two requests can arrive at the same moment on a fresh process.  Without
a lock both would see "no agent yet" and both would initialize one.
AgentProvider uses double-checked locking:

  1. Fast path: if initialization already finished, return the result
     without touching the lock.
  2. Slow path: take the lock, check again (another thread may have won
     the race while we waited), and only then call the factory.

A factory that raises is logged once and remembered.  get() returns None
from then on, and the middleware serves requests uninstrumented instead
of failing them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from apm_instrumenter.core.config import InstrumenterConfig
from apm_instrumenter.services.agent import NewRelicAgent, TransactionAgent

logger = logging.getLogger(__name__)

AgentFactory = Callable[[], TransactionAgent]


class AgentProvider:
    def __init__(self, factory: AgentFactory) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._agent: TransactionAgent | None = None
        self._ready = False

    @property
    def ready(self) -> bool:
        """True once initialization has run, successfully or not."""
        return self._ready

    def get(self) -> TransactionAgent | None:
        if self._ready:
            return self._agent

        with self._lock:
            if not self._ready:
                try:
                    self._agent = self._factory()
                except Exception:
                    logger.exception("APM agent initialization failed; requests will not be instrumented")
                    self._agent = None
                self._ready = True
        return self._agent


# ---------------------------------------------------------------------------
# Process-wide registry
# ---------------------------------------------------------------------------
# One provider per (license key, app name).  Two middleware instances
# configured for the same app share one agent.

_providers: dict[tuple[str, str], AgentProvider] = {}
_providers_lock = threading.Lock()


def _newrelic_factory(config: InstrumenterConfig) -> AgentFactory:
    return lambda: NewRelicAgent(config.license_key, config.app_name)


def get_agent_provider(
    config: InstrumenterConfig, factory: AgentFactory | None = None
) -> AgentProvider:
    """Return the shared provider for this config, creating it on first use.

    ``factory`` only matters for the call that creates the provider;
    later calls for the same key reuse whatever was registered first.
    """
    key = (config.license_key, config.app_name)
    with _providers_lock:
        provider = _providers.get(key)
        if provider is None:
            provider = AgentProvider(factory or _newrelic_factory(config))
            _providers[key] = provider
        return provider


def reset_agent_providers() -> None:
    """Forget every registered provider (used by tests)."""
    with _providers_lock:
        _providers.clear()
