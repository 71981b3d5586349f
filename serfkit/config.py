"""Configuration for a cluster member."""

from __future__ import annotations

import logging
import queue
import socket
from dataclasses import dataclass
from typing import Any, Callable

from .event import Member

# Maps the member protocol version onto the underlying gossip protocol version.
PROTOCOL_VERSION_MAP: dict[int, int] = {5: 2, 4: 2, 3: 2, 2: 2}

MergeDelegate = Callable[[list[Member]], None]


@dataclass
class Config:
    """Settings for a cluster member. Durations are in seconds.

    A bare ``Config()`` holds zero values; ``default_config()`` returns
    the usual defaults.
    """

    node_name: str = ""
    tags: dict[str, str] | None = None
    event_ch: queue.Queue | None = None
    protocol_version: int = 0
    broadcast_timeout: float = 0.0
    leave_propagate_delay: float = 0.0
    coalesce_period: float = 0.0
    quiescent_period: float = 0.0
    user_coalesce_period: float = 0.0
    user_quiescent_period: float = 0.0
    reap_interval: float = 0.0
    reconnect_interval: float = 0.0
    reconnect_timeout: float = 0.0
    tombstone_timeout: float = 0.0
    flap_timeout: float = 0.0
    queue_check_interval: float = 0.0
    queue_depth_warning: int = 0
    max_queue_depth: int = 0
    min_queue_depth: int = 0
    recent_intent_timeout: float = 0.0
    event_buffer: int = 0
    query_buffer: int = 0
    query_timeout_mult: int = 0
    query_response_size_limit: int = 0
    query_size_limit: int = 0
    gossip_interval: float = 0.0
    keyring: Any = None
    logger: logging.Logger | None = None
    snapshot_path: str = ""
    rejoin_after_leave: bool = False
    enable_name_conflict_resolution: bool = False
    disable_coordinates: bool = False
    keyring_file: str = ""
    merge: MergeDelegate | None = None
    user_event_size_limit: int = 0

    def init(self) -> None:
        """Allocate the tag map if it is missing."""
        if self.tags is None:
            self.tags = {}


def default_config() -> Config:
    """Return a Config holding reasonable defaults."""
    return Config(
        node_name=socket.gethostname(),
        broadcast_timeout=5.0,
        leave_propagate_delay=1.0,
        event_buffer=512,
        query_buffer=512,
        logger=logging.getLogger("serfkit"),
        protocol_version=4,
        reap_interval=15.0,
        recent_intent_timeout=5 * 60.0,
        reconnect_interval=30.0,
        reconnect_timeout=24 * 3600.0,
        queue_check_interval=30.0,
        queue_depth_warning=128,
        max_queue_depth=4096,
        tombstone_timeout=24 * 3600.0,
        flap_timeout=60.0,
        gossip_interval=0.2,
        query_timeout_mult=16,
        query_response_size_limit=1024,
        query_size_limit=1024,
        enable_name_conflict_resolution=True,
        disable_coordinates=False,
        user_event_size_limit=512,
    )