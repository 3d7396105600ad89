"""Session table: FlowKey -> FlowSocket mapping shared by every stack context.

Every operation runs inside one lock, so the table never exposes an
intermediate state. Socket I/O (write, disconnect) happens outside the lock;
callers that evict or clear entries disconnect the returned sockets after the
table operation has returned.
"""
from __future__ import annotations

import logging
import threading
import typing as t

from .flow import FlowKey
from .flow_socket import FlowSocket

log = logging.getLogger("udpstack.session")

Entry = t.Tuple[FlowKey, FlowSocket]


class SessionTable:

    def __init__(self):
        self._sessions: dict[FlowKey, FlowSocket] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: FlowKey) -> bool:
        with self._lock:
            return key in self._sessions

    def find_by_key(self, key: FlowKey) -> t.Optional[FlowSocket]:
        with self._lock:
            return self._sessions.get(key)

    def find_by_socket(self, socket: FlowSocket) -> t.Optional[Entry]:
        # linear scan; the eviction policy keeps the table to a handful of entries
        with self._lock:
            for key, sock in self._sessions.items():
                if sock is socket:
                    return key, sock
        return None

    def insert(self, key: FlowKey, socket: FlowSocket):
        with self._lock:
            self._sessions[key] = socket

    def find_or_create(self, key: FlowKey, factory: t.Callable[[], t.Optional[FlowSocket]]) -> t.Optional[t.Tuple[FlowSocket, bool]]:
        """Return (socket, created) for `key`, opening a socket when absent.

        `factory` runs under the table lock, so concurrent first packets of one
        flow share a single socket. Returns None when `factory` does.
        """
        with self._lock:
            sock = self._sessions.get(key)
            if sock is not None:
                return sock, False
            sock = factory()
            if sock is None:
                return None
            self._sessions[key] = sock
            return sock, True

    def remove(self, key: FlowKey) -> t.Optional[FlowSocket]:
        with self._lock:
            return self._sessions.pop(key, None)

    def remove_socket(self, socket: FlowSocket) -> t.Optional[Entry]:
        """Remove the entry holding `socket`, looked up by identity."""
        with self._lock:
            found = self.find_by_socket(socket)
            if found is not None:
                del self._sessions[found[0]]
            return found

    def snapshot(self) -> list[Entry]:
        with self._lock:
            return list(self._sessions.items())

    def evict(self, select: t.Callable[[list[Entry]], t.Optional[FlowKey]]) -> t.Optional[Entry]:
        """Let `select` pick a key from a snapshot and remove it atomically.

        The returned socket is no longer tracked; the caller disconnects it.
        """
        with self._lock:
            key = select(list(self._sessions.items()))
            if key is None:
                return None
            sock = self._sessions.pop(key, None)
            if sock is None:
                return None
            return key, sock

    def disconnect_all(self) -> int:
        """Clear the table and disconnect every socket it held."""
        with self._lock:
            sockets = list(self._sessions.values())
            self._sessions = {}
        for sock in sockets:
            try:
                sock.disconnect()
            except Exception:
                log.exception("disconnect failed for %r", sock)
        return len(sockets)
