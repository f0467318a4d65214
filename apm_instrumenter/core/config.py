"""Configuration for the instrumenter and the example service.

TWO LAYERS OF SETTINGS
------------------------
  Settings: process-wide knobs (environment, log level, port, which
    agent backend to use).  Loaded once at import, like any service.

  InstrumenterConfig: what ONE RequestInstrumenter needs (the APM
    license key, the app name, which headers/params to capture, and the
    path rules).  Resolved once when the middleware is constructed.

Both are frozen dataclasses: they are read on every request from many
concurrent tasks, so they must never change after construction.

WHERE VALUES COME FROM
------------------------
Explicit constructor arguments always win.  Anything not passed falls
back to an environment variable:

  NEWRELIC_LICENSE_KEY   (or NEW_RELIC_LICENSE_KEY, the agent's own name)
  NEWRELIC_APP_NAME      (or NEW_RELIC_APP_NAME)
  NEWRELIC_ATTRIBUTE_HEADERS   comma-separated header names
  NEWRELIC_ATTRIBUTE_PARAMS    comma-separated parameter names

A missing license key or app name is a ConfigurationError at
construction time.  Failing at startup beats discovering on the first
request that no telemetry has ever been sent.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]
AgentBackend = Literal["newrelic", "memory"]

DEFAULT_ATTRIBUTE_HEADERS: tuple[str, ...] = ("Accept", "Accept-Language", "User-Agent")

PathRulePairs = tuple[tuple[str, str], ...]


class ConfigurationError(ValueError):
    """Required configuration is missing or malformed."""


def _getenv(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _getenv_list(name: str) -> tuple[str, ...] | None:
    raw = _getenv(name)
    if not raw:
        return None
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    agent_backend: AgentBackend

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()
    port_raw = _getenv("PORT", "8000")
    agent_raw = _getenv("APM_AGENT", "newrelic").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ConfigurationError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ConfigurationError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if agent_raw not in ("newrelic", "memory"):
        raise ConfigurationError(f"APM_AGENT must be newrelic|memory (got {agent_raw!r})")

    try:
        port = int(port_raw)
    except ValueError:
        raise ConfigurationError(f"PORT must be an integer (got {port_raw!r})") from None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("1", "true", "yes"),
        port=port,
        agent_backend=agent_raw,
    )


@dataclass(frozen=True)
class InstrumenterConfig:
    """Settings for one RequestInstrumenter.

    path_rules is an ordered tuple of (pattern, replacement) pairs.
    Order matters: rules apply cumulatively, each to the output of the
    previous one.
    """

    license_key: str
    app_name: str
    transaction_attribute_headers: tuple[str, ...] = DEFAULT_ATTRIBUTE_HEADERS
    transaction_attribute_params: tuple[str, ...] = ()
    path_rules: PathRulePairs = ()


def _normalize_path_rules(
    path_rules: Mapping[str, str] | Iterable[tuple[str, str]] | None,
) -> PathRulePairs:
    if path_rules is None:
        return ()
    # dicts keep insertion order, so a mapping literal is as good as a list
    items = path_rules.items() if isinstance(path_rules, Mapping) else path_rules
    return tuple((str(pattern), str(replacement)) for pattern, replacement in items)


def load_instrumenter_config(
    *,
    license_key: str | None = None,
    app_name: str | None = None,
    transaction_attribute_headers: Iterable[str] | None = None,
    transaction_attribute_params: Iterable[str] | None = None,
    path_rules: Mapping[str, str] | Iterable[tuple[str, str]] | None = None,
) -> InstrumenterConfig:
    license_key = (
        license_key
        or _getenv("NEWRELIC_LICENSE_KEY")
        or _getenv("NEW_RELIC_LICENSE_KEY")
    )
    if not license_key:
        raise ConfigurationError("Missing NewRelic license key")

    app_name = app_name or _getenv("NEWRELIC_APP_NAME") or _getenv("NEW_RELIC_APP_NAME")
    if not app_name:
        raise ConfigurationError("Missing NewRelic app name")

    if transaction_attribute_headers is None:
        headers = _getenv_list("NEWRELIC_ATTRIBUTE_HEADERS") or DEFAULT_ATTRIBUTE_HEADERS
    else:
        headers = tuple(transaction_attribute_headers)

    if transaction_attribute_params is None:
        params = _getenv_list("NEWRELIC_ATTRIBUTE_PARAMS") or ()
    else:
        params = tuple(transaction_attribute_params)

    return InstrumenterConfig(
        license_key=license_key,
        app_name=app_name,
        transaction_attribute_headers=headers,
        transaction_attribute_params=params,
        path_rules=_normalize_path_rules(path_rules),
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
