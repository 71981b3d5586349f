"""Building blocks for gossip-based cluster membership: clocks, messages, events, queries and keyrings."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "event",
    "internal_query",
    "keymanager",
    "lamport",
    "messages",
    "query",
]