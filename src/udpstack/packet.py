"""Packet codec helpers: convert raw IPv4/UDP bytes to UDPPacket and back."""
from __future__ import annotations

import ipaddress
import typing as t

import dpkt

from .flow import UDPPacket

IP_PROTO_UDP = dpkt.ip.IP_PROTO_UDP


def peek_protocol(raw: bytes) -> t.Optional[int]:
    """Return the IP protocol number of an IPv4 datagram without parsing it.

    Returns None when the buffer is too short or is not IPv4.
    """
    if len(raw) < 20 or raw[0] >> 4 != 4:
        return None
    return raw[9]


def parse_raw(raw: bytes) -> t.Optional[UDPPacket]:
    """Parse an IPv4 datagram and return a UDPPacket or None if unsupported.

    Returns None for non-IPv4, non-UDP, fragmented or malformed packets.
    """
    if peek_protocol(raw) != IP_PROTO_UDP:
        return None
    try:
        ip = dpkt.ip.IP(raw)
    except Exception:
        # dpkt raises NeedData, UnpackError or struct errors depending on where it stops
        return None

    # only the first fragment carries the UDP header and we do not reassemble
    if ip.mf or ip.offset:
        return None
    udp = ip.data
    if not isinstance(udp, dpkt.udp.UDP):
        return None

    try:
        src_ip = ipaddress.IPv4Address(ip.src)
        dst_ip = ipaddress.IPv4Address(ip.dst)
    except ipaddress.AddressValueError:
        return None

    return UDPPacket(
        src_ip=src_ip,
        src_port=udp.sport,
        dst_ip=dst_ip,
        dst_port=udp.dport,
        payload=bytes(udp.data),
        ttl=ip.ttl,
    )


def build_packet(packet: UDPPacket) -> bytes:
    """Serialize a UDPPacket into an IPv4 datagram.

    dpkt fills in the IP header checksum and the UDP checksum when they are
    left at zero.
    """
    udp = dpkt.udp.UDP(sport=packet.src_port, dport=packet.dst_port, data=bytes(packet.payload))
    udp.ulen = len(udp)

    ip = dpkt.ip.IP(
        src=packet.src_ip.packed,
        dst=packet.dst_ip.packed,
        p=IP_PROTO_UDP,
        ttl=packet.ttl,
        data=udp,
    )
    ip.len = len(ip)
    return bytes(ip)
