"""Flow sockets: one real UDP conversation per tunnelled flow.

`UDPFlowSocket` is an asyncio datagram protocol connected to a single remote
host/port. Its owner registers a `FlowSocketDelegate` to receive replies and a
single cancellation notice. `write` and `disconnect` may be called from any
thread; the work is marshalled onto the socket's event loop.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
import typing as t

log = logging.getLogger("udpstack.flow_socket")

# Seconds without traffic before a socket closes itself, and how often that is checked.
SOCKET_IDLE_TIMEOUT = 300.0
SOCKET_CHECK_INTERVAL = 60.0


class FlowSocketDelegate:
    """Observer notified of socket events."""

    def did_receive(self, data: bytes, socket: "FlowSocket"):
        """A datagram arrived from the remote end of `socket`."""

    def did_cancel(self, socket: "FlowSocket"):
        """`socket` is closed and will deliver nothing more."""


class FlowSocket:
    """Base contract for a bidirectional UDP channel to one remote host/port."""

    host: str
    port: int
    last_active: float
    delegate: t.Optional[FlowSocketDelegate]

    def write(self, data: bytes):
        raise NotImplementedError

    def disconnect(self):
        raise NotImplementedError


class UDPFlowSocket(FlowSocket, asyncio.DatagramProtocol):

    def __init__(self, host: str, port: int, loop: asyncio.AbstractEventLoop,
                 idle_timeout: float = SOCKET_IDLE_TIMEOUT,
                 check_interval: float = SOCKET_CHECK_INTERVAL):
        self.host = host
        self.port = port
        self.delegate = None
        self.last_active = time.time()
        self._loop = loop
        self._transport = None
        self._write_pending_data: list[bytes] = []
        self._connected = False
        self._cancelled = False
        self._closing = False
        self._idle_timeout = idle_timeout
        self._check_interval = check_interval
        self._timeout_handle = None
        self._endpoint_task: t.Optional[asyncio.Task] = None

    def __repr__(self):
        return f"<UDPFlowSocket {self.host}:{self.port}>"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def connect(self):
        """Schedule creation of the connected endpoint on the loop."""
        self._loop.call_soon_threadsafe(self._create_task)

    def _create_task(self):
        # the loop only keeps a weak reference to running tasks
        self._endpoint_task = self._loop.create_task(self._create_endpoint())
        self._endpoint_task.add_done_callback(self._endpoint_created)

    def _endpoint_created(self, task: asyncio.Task):
        self._endpoint_task = None

    async def _create_endpoint(self):
        try:
            await self._loop.create_datagram_endpoint(lambda: self, remote_addr=(self.host, self.port))
        except OSError as e:
            log.warning("%s when creating endpoint to %s:%d", e, self.host, self.port)
            self._cancel()

    def connection_made(self, transport):
        if self._closing:
            transport.close()
            return
        self._transport = transport
        self._connected = True
        self.last_active = time.time()
        self._timeout_handle = self._loop.call_later(self._check_interval, self._timeout_handler)

        if self._write_pending_data:
            pending = self._write_pending_data
            self._write_pending_data = []
            for data in pending:
                self._transport.sendto(data)

    def datagram_received(self, data, addr):
        self.last_active = time.time()
        delegate = self.delegate
        if delegate is None:
            return
        try:
            delegate.did_receive(data, self)
        except Exception:
            log.exception("delegate failed handling data from %s:%d", self.host, self.port)

    def error_received(self, exc):
        log.debug("udp error from %s:%d: %s", self.host, self.port, exc)
        if self._transport is not None:
            self._transport.close()
        else:
            self._cancel()

    def connection_lost(self, exc):
        self._connected = False
        self._cancel()

    def write(self, data: bytes):
        self.last_active = time.time()
        if self._loop.is_closed():
            # nothing can be sent any more; report the socket as gone
            self._cancel()
            return
        self._loop.call_soon_threadsafe(self._write, bytes(data))

    def _write(self, data: bytes):
        if self._closing:
            return
        if not self._connected:
            self._write_pending_data.append(data)
        else:
            self._transport.sendto(data)

    def disconnect(self):
        if self._loop.is_closed():
            self._cancel()
            return
        self._loop.call_soon_threadsafe(self._disconnect)

    def _disconnect(self):
        if self._closing:
            return
        self._closing = True
        self._write_pending_data = []
        if self._transport is not None:
            # connection_lost follows and delivers the cancel notice
            self._transport.close()
        else:
            self._cancel()

    def _timeout_handler(self):
        after = self.last_active - time.time() + self._idle_timeout
        if after < 0:
            log.info("udp session %s:%d idle for %.0fs, closing", self.host, self.port, self._idle_timeout)
            self._disconnect()
        else:
            self._timeout_handle = self._loop.call_later(min(after, self._check_interval), self._timeout_handler)

    def _cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        self._closing = True
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        delegate = self.delegate
        if delegate is None:
            return
        try:
            delegate.did_cancel(self)
        except Exception:
            log.exception("delegate failed handling cancel of %s:%d", self.host, self.port)


def open_udp_socket(host: str, port: int, loop: asyncio.AbstractEventLoop,
                    delegate: t.Optional[FlowSocketDelegate] = None, **kwargs) -> t.Optional[UDPFlowSocket]:
    """Open a UDPFlowSocket toward host/port, or return None if that is impossible.

    Only argument checks happen here; endpoint creation runs on the loop and a
    failure there surfaces as the socket's cancel notice.
    """
    try:
        ipaddress.ip_address(str(host))
    except ValueError:
        log.debug("refusing to open socket to invalid host %r", host)
        return None
    if not 0 < int(port) < 65536:
        log.debug("refusing to open socket to invalid port %r", port)
        return None
    if loop.is_closed():
        return None

    sock = UDPFlowSocket(str(host), int(port), loop, **kwargs)
    # registered before connecting so an early failure still reaches the delegate
    sock.delegate = delegate
    sock.connect()
    return sock
