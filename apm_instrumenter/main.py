from __future__ import annotations

import logging

from fastapi import FastAPI

from apm_instrumenter.api.health import router as health_router
from apm_instrumenter.api.metrics_endpoint import router as metrics_router
from apm_instrumenter.api.pages import router as pages_router
from apm_instrumenter.core.config import SETTINGS, InstrumenterConfig, load_instrumenter_config
from apm_instrumenter.core.logging import setup_logging
from apm_instrumenter.middleware.instrumenter import RequestInstrumenter
from apm_instrumenter.services.agent import InMemoryAgent
from apm_instrumenter.services.agent_provider import AgentProvider, get_agent_provider

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)

# Collapses /pages/new/<id> into one transaction name
DEMO_PATH_RULES = {r"(/pages/new)/\S+": "$1"}


def create_app(
    *,
    config: InstrumenterConfig | None = None,
    agent_provider: AgentProvider | None = None,
) -> FastAPI:
    """Build the example service.

    Run with: uvicorn --factory apm_instrumenter.main:create_app

    Without an explicit config, the license key and app name come from
    NEWRELIC_LICENSE_KEY / NEWRELIC_APP_NAME.  APM_AGENT=memory swaps
    the NewRelic agent for the in-memory one (local dev, no account).
    """
    config = config or load_instrumenter_config(path_rules=DEMO_PATH_RULES)
    if agent_provider is None:
        factory = InMemoryAgent if SETTINGS.agent_backend == "memory" else None
        agent_provider = get_agent_provider(config, factory=factory)

    app = FastAPI(
        title="apm-instrumenter",
        docs_url="/docs" if SETTINGS.is_dev else None,
        redoc_url="/redoc" if SETTINGS.is_dev else None,
    )
    app.state.agent_provider = agent_provider

    # Prometheus scrapes would otherwise show up as APM transactions
    app.add_middleware(
        RequestInstrumenter,
        config=config,
        agent_provider=agent_provider,
        exclude_paths={"/metrics"},
    )

    app.include_router(metrics_router)
    app.include_router(health_router)
    app.include_router(pages_router)

    logger.info(
        "apm-instrumenter started  env=%s app_name=%s agent=%s",
        SETTINGS.app_env,
        config.app_name,
        SETTINGS.agent_backend,
        extra={"app_name": config.app_name},
    )
    return app
