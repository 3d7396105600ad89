"""Eviction policies over a SessionTable.

Two procedures keep the socket count bounded, and neither schedules itself:

- `recycle` is the routine cleanup run on an external tick. Once the table
  holds more than `low_water_mark` flows it drops the least recently active
  flow, provided that flow has been idle for more than `idle_threshold`
  seconds.
- `recycle_from` is the memory-pressure response. It drops the least recently
  active flow regardless of idle time, but never the `protected` socket (the
  one that has just delivered data).

Each call removes at most one entry. Selection and removal happen under the
table lock; the evicted socket is disconnected after the lock is released.
"""
from __future__ import annotations

import logging
import time
import typing as t

from .flow import FlowKey
from .flow_socket import FlowSocket
from .session import Entry, SessionTable

log = logging.getLogger("udpstack.policy")

LOW_WATER_MARK = 2
IDLE_THRESHOLD = 0.5


def _oldest(entries: t.Iterable[Entry]) -> t.Optional[FlowKey]:
    earliest_key = None
    earliest_active = None
    for key, sock in entries:
        # strict comparison keeps the first entry on ties
        if earliest_active is None or sock.last_active < earliest_active:
            earliest_key = key
            earliest_active = sock.last_active
    return earliest_key


def _disconnect(entry: t.Optional[Entry], reason: str) -> t.Optional[Entry]:
    if entry is None:
        return None
    key, sock = entry
    log.debug("evicting %s (%s)", key.flow_id, reason)
    try:
        sock.disconnect()
    except Exception:
        log.exception("disconnect failed for %s", key.flow_id)
    return entry


def recycle(table: SessionTable, now: t.Optional[float] = None,
            low_water_mark: int = LOW_WATER_MARK,
            idle_threshold: float = IDLE_THRESHOLD) -> t.Optional[Entry]:
    """Evict the most idle flow once the table is over the low-water mark."""
    if now is None:
        now = time.time()

    def select(entries):
        if len(entries) <= low_water_mark:
            return None
        return _oldest((key, sock) for key, sock in entries if now - sock.last_active > idle_threshold)

    return _disconnect(table.evict(select), "idle")


def recycle_from(table: SessionTable, protected: FlowSocket,
                 low_water_mark: int = LOW_WATER_MARK) -> t.Optional[Entry]:
    """Evict the most idle flow other than `protected`, ignoring idle time."""

    def select(entries):
        if len(entries) <= low_water_mark:
            return None
        return _oldest((key, sock) for key, sock in entries if sock is not protected)

    return _disconnect(table.evict(select), "memory pressure")


def earliest_timestamp(table: SessionTable, now: t.Optional[float] = None) -> float:
    """Earliest `last_active` across the table, or `now` when nothing is older."""
    earliest = time.time() if now is None else now
    for _, sock in table.snapshot():
        if sock.last_active < earliest:
            earliest = sock.last_active
    return earliest
