"""UDP direct stack: relay tunnelled UDP flows over real sockets.

Outbound, `input()` takes a raw IPv4 datagram read from the virtual interface,
finds or opens the flow's socket and writes the UDP payload to it. Inbound,
socket replies arrive through the `FlowSocketDelegate` callbacks and are
rebuilt into IPv4 datagrams addressed back to the tunnel client, then handed
to the `output` sink. Every failure drops the packet or flow; nothing is
retried and nothing propagates to the caller.
"""
from __future__ import annotations

import asyncio
import logging
import socket as socketlib
import time
import typing as t

from . import policy
from .config import StackConfig
from .flow import FlowKey
from .flow_socket import FlowSocket, FlowSocketDelegate, open_udp_socket
from .memory import MEMORY_CEILING, memory_footprint
from .packet import IP_PROTO_UDP, build_packet, parse_raw, peek_protocol
from .session import SessionTable

log = logging.getLogger("udpstack.stack")

OutputFunc = t.Callable[[t.List[bytes], t.List[int]], None]
Opener = t.Callable[[str, int, FlowSocketDelegate], t.Optional[FlowSocket]]


class IPStack:
    """Contract shared by the stacks a tunnel interface dispatches packets to."""

    output: t.Optional[OutputFunc] = None

    def input(self, packet: bytes, version: t.Optional[int] = None) -> bool:
        """Offer a packet to the stack; False lets another stack handle it."""
        raise NotImplementedError

    def start(self):
        pass

    def stop(self):
        pass


class UDPDirectStack(IPStack, FlowSocketDelegate):
    """Relays IPv4 UDP flows, one socket per flow, with bounded socket count."""

    def __init__(self, opener: Opener, output: t.Optional[OutputFunc] = None,
                 memory_probe: t.Callable[[], int] = memory_footprint,
                 memory_ceiling: int = MEMORY_CEILING,
                 clock: t.Callable[[], float] = time.time,
                 low_water_mark: int = policy.LOW_WATER_MARK,
                 idle_threshold: float = policy.IDLE_THRESHOLD):
        self.output = output
        self.sessions = SessionTable()
        self._opener = opener
        self._memory_probe = memory_probe
        self._memory_ceiling = memory_ceiling
        self._clock = clock
        self._low_water_mark = low_water_mark
        self._idle_threshold = idle_threshold

    @classmethod
    def from_config(cls, config: StackConfig, loop: asyncio.AbstractEventLoop,
                    output: t.Optional[OutputFunc] = None, **kwargs) -> "UDPDirectStack":
        """Build a stack whose flows use UDPFlowSockets on `loop`."""

        def opener(host, port, delegate):
            return open_udp_socket(host, port, loop, delegate=delegate,
                                   idle_timeout=config.socket_idle_timeout,
                                   check_interval=config.socket_check_interval)

        return cls(opener, output=output,
                   memory_ceiling=config.memory_ceiling,
                   low_water_mark=config.low_water_mark,
                   idle_threshold=config.idle_threshold,
                   **kwargs)

    def start(self):
        usage = self._memory_probe()
        if usage >= self._memory_ceiling:
            log.warning("memory usage %d already over ceiling %d, replies will trigger evictions; "
                        "raise memory_ceiling", usage, self._memory_ceiling)

    @property
    def active_flows(self) -> int:
        return len(self.sessions)

    def input(self, packet: bytes, version: t.Optional[int] = None) -> bool:
        """Input a packet into the stack.

        Only IPv4 UDP is processed. Returns whether the stack accepted the
        packet; an accepted packet is not offered to other stacks, even when it
        is later dropped because it cannot be parsed or relayed.
        """
        if version is not None and version == socketlib.AF_INET6:
            return False
        if peek_protocol(packet) != IP_PROTO_UDP:
            return False
        self._input(packet)
        return True

    def _input(self, raw: bytes):
        packet = parse_raw(raw)
        if packet is None:
            log.debug("dropping malformed udp packet (%d bytes)", len(raw))
            return

        key = FlowKey.from_packet(packet)
        found = self.sessions.find_or_create(key, lambda: self._open(key))
        if found is None:
            return
        sock, created = found
        if created:
            log.debug("opened flow %s, %d active", key.flow_id, len(self.sessions))
        sock.write(packet.payload)

    def _open(self, key: FlowKey) -> t.Optional[FlowSocket]:
        try:
            sock = self._opener(str(key.dst_ip), key.dst_port, self)
        except OSError as e:
            log.warning("%s when opening socket for %s", e, key.flow_id)
            return None
        if sock is None:
            log.debug("could not open socket for %s, dropping packet", key.flow_id)
            return None
        sock.delegate = self
        return sock

    def did_receive(self, data: bytes, socket: FlowSocket):
        found = self.sessions.find_by_socket(socket)
        if found is None:
            log.debug("received %d bytes from untracked socket %r, dropping", len(data), socket)
            return
        key, _ = found

        raw = build_packet(key.reply_packet(data))
        if self.output is None:
            log.warning("no output configured, dropping reply for %s", key.flow_id)
        else:
            try:
                self.output([raw], [socketlib.AF_INET])
            except Exception:
                log.exception("output failed for reply on %s", key.flow_id)

        usage = self._memory_probe()
        if usage >= self._memory_ceiling:
            log.info("memory usage %d over ceiling %d, recycling", usage, self._memory_ceiling)
            self.recycle_from(socket)

    def did_cancel(self, socket: FlowSocket):
        found = self.sessions.remove_socket(socket)
        if found is not None:
            key, _ = found
            log.debug("flow %s cancelled, %d active", key.flow_id, len(self.sessions))

    def recycle(self):
        """Evict the most idle flow if the table is over its low-water mark."""
        return policy.recycle(self.sessions, now=self._clock(),
                              low_water_mark=self._low_water_mark,
                              idle_threshold=self._idle_threshold)

    def recycle_from(self, socket: FlowSocket):
        """Evict the most idle flow other than `socket`, ignoring idle time."""
        return policy.recycle_from(self.sessions, socket, low_water_mark=self._low_water_mark)

    def stop(self):
        count = self.sessions.disconnect_all()
        if count:
            log.info("stopped, disconnected %d flows", count)

    def get_earliest_timestamp(self) -> float:
        """Earliest last activity across flows; now when there are none."""
        return policy.earliest_timestamp(self.sessions, now=self._clock())
