"""Prometheus metrics endpoint.

Exposes the instrumenter's own counters (apm_instrumenter/core/metrics.py)
in text exposition format.  Excluded from APM instrumentation in
create_app() so scrapes don't become transactions.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
