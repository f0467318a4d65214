"""Request-scoped transaction context.

WHY CONTEXT VARIABLES (NOT THREAD-LOCALS)
-------------------------------------------
ASGI servers run many requests concurrently on the SAME thread.  A
thread-local would leak one request's transaction id into another's log
lines.  A ContextVar gives every task its own value.

The transaction id is also stored in the ASGI scope's "state" dict
(Starlette's ``request.state``), which is what the instrumenter itself
reads when ending the transaction.  The ContextVar exists so code that
has no request object (a service function, a logging call) can still
tell which transaction it is running in.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar

# None means "not inside an instrumented request"
transaction_id_var: ContextVar[int | None] = ContextVar("transaction_id", default=None)


def current_transaction_id() -> int | None:
    return transaction_id_var.get()


class TransactionContextFilter(logging.Filter):
    """Attach the current transaction id to every LogRecord.

    Installed on the stdout handler by setup_logging().  Logger-level
    filters only see records logged on that exact logger, while handler
    filters see everything that propagates to the handler.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.transaction_id = transaction_id_var.get()  # type: ignore[attr-defined]
        return True
