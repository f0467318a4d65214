"""APM transaction middleware: one agent transaction per HTTP request.

For each request, this middleware:
  1. Begins a transaction on the agent BEFORE the app runs
  2. Names it "<METHOD> <normalized path>" and records the request URL
  3. Attaches selected headers, the raw query string and selected
     parameters as transaction attributes
  4. Ends the transaction once the response body has been fully sent

WHEN IS A RESPONSE "DONE"?
----------------------------
An ASGI app does not return a response object.  It calls send() with a
sequence of messages:

  {"type": "http.response.start", "status": 200, ...}
  {"type": "http.response.body", "body": b"chunk 1", "more_body": True}
  {"type": "http.response.body", "body": b"chunk 2", "more_body": True}
  {"type": "http.response.body", "body": b"chunk 3", "more_body": False}

A buffered response is the degenerate case: one body message with
more_body=False.  A streamed response may send its chunks long after the
endpoint function has returned (Starlette's StreamingResponse drives an
async generator).  Either way, the message with more_body=False is the
end-of-stream marker, so we wrap send() and end the transaction right
after forwarding that message.  Every message passes through unmodified.

WHY ALSO A finally
--------------------
If the app raises before sending its last body message, or the client
disconnects mid-stream, the end-of-stream marker never arrives.  The
try/finally around the app call closes the transaction on every exit
path.  end_transaction() pops the id from request state, so the two
call sites can never end the same transaction twice.

MIDDLEWARE STYLE
------------------
This is a pure ASGI middleware, not a BaseHTTPMiddleware subclass.
BaseHTTPMiddleware hands dispatch() a response whose body has not been
sent yet, which makes "after the last chunk" awkward to observe.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from typing import Any
from urllib.parse import parse_qsl

from starlette.concurrency import run_in_threadpool
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from apm_instrumenter.core.config import InstrumenterConfig, load_instrumenter_config
from apm_instrumenter.core.metrics import (
    AGENT_CALL_ERRORS,
    TRANSACTIONS_BEGUN,
    TRANSACTIONS_ENDED,
    UNINSTRUMENTED_REQUESTS,
)
from apm_instrumenter.middleware.request_context import transaction_id_var
from apm_instrumenter.services.agent import TransactionAgent
from apm_instrumenter.services.agent_provider import AgentProvider, get_agent_provider
from apm_instrumenter.services.path_rules import compile_path_rules, transform_path

logger = logging.getLogger(__name__)

# Keys in scope["state"], i.e. request.state.<key> for Starlette handlers
TRANSACTION_ID_KEY = "transaction_id"
TRANSACTION_AGENT_KEY = "transaction_agent"

QUERY_STRING_ATTRIBUTE = "QUERY_STRING"
# Distinguishes header attributes from parameters with the same name
HEADER_ATTRIBUTE_SUFFIX = ":"

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class InvalidRequestURI(ValueError):
    """The request target has no path component (e.g. "?foo=bar")."""


def _call_agent(operation: str, fn: Callable[..., Any], *args: Any) -> bool:
    """Run one best-effort agent call.  Telemetry must never fail a request."""
    try:
        fn(*args)
    except Exception:
        AGENT_CALL_ERRORS.labels(operation=operation).inc()
        logger.warning("APM agent call %s failed", operation, exc_info=True)
        return False
    return True


def _request_uri(scope: Scope) -> str:
    raw_path = scope.get("raw_path")
    # Some servers leave the query string on raw_path
    path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else scope.get("path", "")
    query = scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


class RequestInstrumenter:
    """ASGI middleware reporting each request as an APM transaction."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        config: InstrumenterConfig | None = None,
        license_key: str | None = None,
        app_name: str | None = None,
        transaction_attribute_headers: Iterable[str] | None = None,
        transaction_attribute_params: Iterable[str] | None = None,
        path_rules: Mapping[str, str] | Iterable[tuple[str, str]] | None = None,
        agent_provider: AgentProvider | None = None,
        exclude_paths: Iterable[str] = (),
    ) -> None:
        self.app = app
        self.config = config or load_instrumenter_config(
            license_key=license_key,
            app_name=app_name,
            transaction_attribute_headers=transaction_attribute_headers,
            transaction_attribute_params=transaction_attribute_params,
            path_rules=path_rules,
        )
        self._path_rules = compile_path_rules(self.config.path_rules)
        self._agent_provider = agent_provider or get_agent_provider(self.config)
        self._exclude_paths = frozenset(exclude_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path") in self._exclude_paths:
            await self.app(scope, receive, send)
            return

        agent = await self._get_agent()
        if agent is None:
            UNINSTRUMENTED_REQUESTS.labels(reason="agent_unavailable").inc()
            await self.app(scope, receive, send)
            return

        form_params, receive = await self._read_form_params(scope, receive)
        txn_id = self.begin_transaction(agent, scope, form_params)
        token = transaction_id_var.set(txn_id)

        async def send_wrapper(message: Message) -> None:
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                self.end_transaction(scope)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            self.end_transaction(scope)
            transaction_id_var.reset(token)

    async def _get_agent(self) -> TransactionAgent | None:
        if self._agent_provider.ready:
            return self._agent_provider.get()
        # First request: agent start-up may block on the network
        return await run_in_threadpool(self._agent_provider.get)

    async def _read_form_params(
        self, scope: Scope, receive: Receive
    ) -> tuple[list[tuple[str, str]], Receive]:
        """Buffer and parse a urlencoded body when params are captured.

        The app still needs the body, so the consumed messages are
        replayed through a new receive callable.
        """
        if not self.config.transaction_attribute_params:
            return [], receive

        content_type = Headers(scope=scope).get("content-type", "")
        if content_type.split(";")[0].strip().lower() != _FORM_CONTENT_TYPE:
            return [], receive

        messages: deque[Message] = deque()
        body = b""
        while True:
            message = await receive()
            messages.append(message)
            if message["type"] != "http.request":
                break
            body += message.get("body", b"")
            if not message.get("more_body", False):
                break

        async def replay() -> Message:
            if messages:
                return messages.popleft()
            return await receive()

        return parse_qsl(body.decode("latin-1"), keep_blank_values=True), replay

    def transform_path(self, path: str) -> str:
        return transform_path(path, self._path_rules)

    def begin_transaction(
        self,
        agent: TransactionAgent,
        scope: Scope,
        form_params: Iterable[tuple[str, str]] = (),
    ) -> int | None:
        """Open and populate a transaction.  Returns its id, or None if declined."""
        request_uri = _request_uri(scope)
        if not request_uri.startswith("/"):
            raise InvalidRequestURI(f"Request target {request_uri!r} has no path")

        try:
            txn_id = agent.begin_transaction()
        except Exception:
            AGENT_CALL_ERRORS.labels(operation="begin_transaction").inc()
            logger.warning("APM agent call begin_transaction failed", exc_info=True)
            txn_id = -1

        if txn_id < 0:
            TRANSACTIONS_BEGUN.labels(outcome="rejected").inc()
            logger.debug("APM agent declined transaction for %s", request_uri)
            return None

        TRANSACTIONS_BEGUN.labels(outcome="started").inc()
        state = scope.setdefault("state", {})
        state[TRANSACTION_ID_KEY] = txn_id
        state[TRANSACTION_AGENT_KEY] = agent

        request = Request(scope)
        name = f"{request.method} {self.transform_path(scope.get('path', ''))}"

        _call_agent("set_transaction_request_url", agent.set_transaction_request_url, txn_id, request_uri)
        _call_agent("set_transaction_name", agent.set_transaction_name, txn_id, name)

        for key, value in self._collect_attributes(request, list(form_params)):
            _call_agent("add_transaction_attribute", agent.add_transaction_attribute, txn_id, key, value)

        logger.debug(
            "Transaction %d begun: %s",
            txn_id,
            name,
            extra={"transaction_name": name, "method": request.method, "path": scope.get("path")},
        )
        return txn_id

    def _collect_attributes(
        self, request: Request, form_params: list[tuple[str, str]]
    ) -> list[tuple[str, str]]:
        attributes: list[tuple[str, str]] = []

        for header in self.config.transaction_attribute_headers:
            value = ", ".join(request.headers.getlist(header))
            if value:
                attributes.append((header + HEADER_ATTRIBUTE_SUFFIX, value))

        # Recorded even when empty: the raw query string is cheap and useful
        query_string = request.scope.get("query_string", b"").decode("latin-1")
        attributes.append((QUERY_STRING_ATTRIBUTE, query_string))

        for param in self.config.transaction_attribute_params:
            values = request.query_params.getlist(param)
            values += [v for k, v in form_params if k == param]
            if values:
                attributes.append((param, ", ".join(values)))

        return attributes

    def end_transaction(self, scope: Scope) -> None:
        """End the request's transaction, if one is open.  Safe to call twice."""
        state = scope.get("state")
        if not state:
            return

        txn_id = state.pop(TRANSACTION_ID_KEY, None)
        agent = state.pop(TRANSACTION_AGENT_KEY, None)
        if txn_id is None or agent is None:
            return

        if _call_agent("end_transaction", agent.end_transaction, txn_id):
            TRANSACTIONS_ENDED.inc()
            logger.debug("Transaction %d ended", txn_id)


def add_transaction_attribute(request: Request, key: str, value: object) -> bool:
    """Attach an attribute to the request's open transaction.

    For endpoints that know something the middleware cannot (a user id,
    a tenant).  Returns False when the request is not instrumented or the
    transaction has already ended.
    """
    state = request.scope.get("state") or {}
    txn_id = state.get(TRANSACTION_ID_KEY)
    agent = state.get(TRANSACTION_AGENT_KEY)
    if txn_id is None or agent is None:
        return False
    return _call_agent("add_transaction_attribute", agent.add_transaction_attribute, txn_id, key, str(value))
