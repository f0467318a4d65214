"""Prometheus metrics about the instrumentation layer itself.

The APM agent measures the application.  These counters measure the
instrumenter: is it actually opening transactions, are they all being
closed, and how often does it fall back to passthrough?

A healthy process shows

  apm_transactions_begun_total{outcome="started"} == apm_transactions_ended_total

(give or take the requests in flight).  A growing gap means
transactions are leaking.
"""

from __future__ import annotations

from prometheus_client import Counter

TRANSACTIONS_BEGUN = Counter(
    "apm_transactions_begun_total",
    "Transactions requested from the APM agent, by outcome",
    ["outcome"],  # "started" or "rejected" (negative id from the agent)
)

TRANSACTIONS_ENDED = Counter(
    "apm_transactions_ended_total",
    "Transactions ended on the APM agent",
)

UNINSTRUMENTED_REQUESTS = Counter(
    "apm_uninstrumented_requests_total",
    "HTTP requests forwarded without instrumentation",
    ["reason"],  # "agent_unavailable"
)

AGENT_CALL_ERRORS = Counter(
    "apm_agent_call_errors_total",
    "Agent calls that raised and were skipped",
    ["operation"],
)
