"""Flow identity: the parsed UDP datagram and the 4-tuple session key.

A flow is keyed in the orientation of the packet that opened it (tunnel
client -> remote host). Replies are never looked up by key; they are rebuilt
by reversing the stored key.
"""
from __future__ import annotations

import dataclasses
import ipaddress


@dataclasses.dataclass
class UDPPacket:
    src_ip: ipaddress.IPv4Address
    src_port: int
    dst_ip: ipaddress.IPv4Address
    dst_port: int
    payload: bytes
    ttl: int = 64


@dataclasses.dataclass(frozen=True)
class FlowKey:
    src_ip: ipaddress.IPv4Address
    src_port: int
    dst_ip: ipaddress.IPv4Address
    dst_port: int

    @classmethod
    def from_packet(cls, packet: UDPPacket) -> "FlowKey":
        return cls(src_ip=packet.src_ip, src_port=packet.src_port, dst_ip=packet.dst_ip, dst_port=packet.dst_port)

    @property
    def flow_id(self) -> str:
        return f"{self.src_ip}:{self.src_port}-{self.dst_ip}:{self.dst_port}"

    def reply_packet(self, payload: bytes) -> UDPPacket:
        """Build the datagram a reply from the remote end maps back to.

        Addresses and ports are swapped so the tunnel client sees the reply
        coming from the host it originally addressed.
        """
        return UDPPacket(
            src_ip=self.dst_ip,
            src_port=self.dst_port,
            dst_ip=self.src_ip,
            dst_port=self.src_port,
            payload=payload,
        )
