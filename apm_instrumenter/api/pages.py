"""Demo endpoints exercising each response shape the instrumenter handles."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from fastapi import APIRouter, Query, Request
from fastapi.responses import Response, StreamingResponse

from apm_instrumenter.middleware.instrumenter import add_transaction_attribute

router = APIRouter(tags=["pages"])


@router.get("/pages/new/{page_id}")
async def new_page(page_id: str, request: Request) -> dict:
    # Handlers can enrich the transaction the middleware opened
    add_transaction_attribute(request, "page_id", page_id)
    return {"page_id": page_id}


@router.get("/stream")
async def stream(chunks: int = Query(default=3, ge=0, le=100)) -> StreamingResponse:
    async def generate() -> AsyncIterator[bytes]:
        for i in range(chunks):
            yield f"chunk {i}\n".encode()
            await asyncio.sleep(0)

    return StreamingResponse(generate(), media_type="text/plain")


@router.post("/echo")
async def echo(request: Request) -> Response:
    body = await request.body()
    return Response(content=body, media_type=request.headers.get("content-type", "text/plain"))


@router.get("/boom")
async def boom() -> dict:
    raise RuntimeError("boom")
