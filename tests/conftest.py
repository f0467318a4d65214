from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from apm_instrumenter.core.config import InstrumenterConfig
from apm_instrumenter.main import create_app
from apm_instrumenter.services.agent import InMemoryAgent
from apm_instrumenter.services.agent_provider import AgentProvider, reset_agent_providers

# Ensure repo root is on sys.path so `import apm_instrumenter` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

PAGES_RULE = (r"(/pages/new)/\S+", "$1")


@pytest.fixture(autouse=True)
def reset_providers() -> None:
    """Each test gets a fresh process-wide provider registry."""
    reset_agent_providers()
    yield
    reset_agent_providers()


def make_config(**overrides) -> InstrumenterConfig:
    values = {
        "license_key": "test-license-key",
        "app_name": "test-app",
        "transaction_attribute_headers": ("User-Agent",),
        "transaction_attribute_params": (),
        "path_rules": (PAGES_RULE,),
    }
    values.update(overrides)
    return InstrumenterConfig(**values)


def provider_for(agent: InMemoryAgent) -> AgentProvider:
    return AgentProvider(lambda: agent)


@pytest.fixture
def agent() -> InMemoryAgent:
    return InMemoryAgent()


@pytest.fixture
def client(agent: InMemoryAgent) -> TestClient:
    app = create_app(config=make_config(), agent_provider=provider_for(agent))
    return TestClient(app)


# ---------------------------------------------------------------------------
# Raw ASGI helpers
# ---------------------------------------------------------------------------


def http_scope(
    path: str = "/",
    *,
    method: str = "GET",
    query_string: bytes = b"",
    headers: list[tuple[str, str]] | None = None,
) -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("latin-1"),
        "root_path": "",
        "query_string": query_string,
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers or []],
        "server": ("testserver", 80),
        "client": ("testclient", 50000),
    }


async def empty_receive() -> dict:
    return {"type": "http.request", "body": b"", "more_body": False}
