"""Health endpoint.

Returns 200 even when the APM agent is unavailable: the service keeps
serving requests uninstrumented, so it is alive, just not observed.
The "agent" field says which of the three states it is in:

  pending       no request has needed the agent yet
  ready         the agent started and transactions are being reported
  unavailable   agent start-up failed; requests pass through
"""

from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict:
    provider = request.app.state.agent_provider
    if not provider.ready:
        agent_status = "pending"
    elif provider.get() is None:
        agent_status = "unavailable"
    else:
        agent_status = "ready"

    return {
        "status": "ok" if agent_status != "unavailable" else "degraded",
        "agent": agent_status,
    }
