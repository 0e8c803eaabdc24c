# vamo/core/dispatch/__init__.py
"""
Dispatch notification engine.

- ``selector``: k nearest available providers with a fresh position
- ``filters``: preference filter and push token validation
- ``batching``: chunked concurrent submission to the push gateway
- ``receipts``: delivery receipt reconciliation, pending ticket registry
- ``orchestrator``: the two dispatch flows and the caller-invoked follow-ups
- ``messages``: ride/delivery requests and trip/delivery status texts

Core code talks to stores and the gateway only through ``ports``.
Nothing here imports ``vamo.transport`` or the Postgres repos.
"""
