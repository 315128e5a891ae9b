"""
Projectors.

Consumer-group members that materialize the stream log into derived
stores. Each projector has its own consumer group (its own cursor) and
is idempotent with respect to redelivery.

Invariants:
    - Entries are acknowledged only after the store write succeeded
    - Projections never move back to an older version of an entity
"""

from .base import FailureCallback, Projector
from .cache import CacheProjector
from .comments import CommentProjector
from .graph import GraphProjector, derive_edges

__all__ = [
    "Projector",
    "FailureCallback",
    "CacheProjector",
    "GraphProjector",
    "CommentProjector",
    "derive_edges",
]
