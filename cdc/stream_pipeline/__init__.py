"""
CDC stream pipeline - relational changes to ordered logs to projections.

This package implements the data-flow backbone of the movie database demo:
- Change Producer: upstream row changes normalized into Events
- Stream Log: one ordered, durable log per source entity type
- Projectors: consumer-group members materializing the log into stores
- Notification fan-out: best-effort push of live changes to clients

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │  MySQL CDC  │────▶│  Normalizer │────▶│ ChangeProducer  │
    │  (binlog)   │     │  (schemas)  │     │                 │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                                                     ▼
                        ┌─────────────────────────────────────────┐
                        │     Stream Log (Redis Streams/Kafka)    │
                        └─────────────────────────────────────────┘
                                             │
              ┌──────────────┬───────────────┼──────────────┐
              │              │               │              │
              ▼              ▼               ▼              ▼
         ┌─────────┐    ┌─────────┐    ┌──────────┐   ┌──────────┐
         │  Cache  │    │  Graph  │    │ Comments │   │ Fan-out  │
         │Projector│    │Projector│    │Projector │   │Dispatcher│
         └────┬────┘    └────┬────┘    └────┬─────┘   └────┬─────┘
              ▼              ▼              ▼              ▼
          key-value      nodes/edges     comments      websockets
           store           store          store

Invariants:
    - The stream log is the source of truth; projections can be rebuilt
    - Entry IDs strictly increase within a stream key
    - Every projector is idempotent under redelivery
    - Entries are acknowledged only after the projection write succeeds
    - Notifications are best-effort and never block projectors

How to change safely:
    - New source tables need a registered TableSchema before serving
    - New stores must implement the capability interfaces in store.base
    - Verify idempotency with duplicate-delivery tests

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
