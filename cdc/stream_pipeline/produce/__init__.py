"""
Change producer.

Turns upstream row changes (plain or Debezium-encoded) into normalized
events on the stream log.

Invariants:
    - Changes for one row are appended in the order received
    - Malformed changes are never appended
"""

from .change import RowChange, decode_change
from .feed import iterable_feed, jsonl_feed
from .normalizer import Normalizer, normalize_value
from .producer import ChangeProducer

__all__ = [
    "ChangeProducer",
    "Normalizer",
    "RowChange",
    "decode_change",
    "normalize_value",
    "jsonl_feed",
    "iterable_feed",
]
