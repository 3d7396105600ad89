import ipaddress
import struct

import dpkt

from udpstack.flow import UDPPacket
from udpstack.packet import build_packet, parse_raw, peek_protocol
from tests.utils_packets import build_tcp, build_udp, build_udp6


def _udp_checksum_ok(ip) -> bool:
    udp_bytes = bytes(ip.data)
    pseudo = struct.pack(">4s4sxBH", ip.src, ip.dst, ip.p, len(udp_bytes))
    s = dpkt.in_cksum_add(0, pseudo)
    s = dpkt.in_cksum_add(s, udp_bytes)
    return dpkt.in_cksum_done(s) == 0


def test_peek_protocol():
    assert peek_protocol(build_udp("10.0.0.1", 1000, "10.0.0.2", 53)) == dpkt.ip.IP_PROTO_UDP
    assert peek_protocol(build_tcp("10.0.0.1", 1000, "10.0.0.2", 80)) == dpkt.ip.IP_PROTO_TCP
    assert peek_protocol(build_udp6("2001:db8::1", 1000, "2001:db8::2", 53)) is None
    assert peek_protocol(b"\x45\x00") is None


def test_parse_udp_packet():
    raw = build_udp("192.0.2.1", 40000, "198.51.100.2", 53, b"query", ttl=32)
    pkt = parse_raw(raw)
    assert pkt is not None
    assert pkt.src_ip == ipaddress.IPv4Address("192.0.2.1")
    assert pkt.src_port == 40000
    assert pkt.dst_ip == ipaddress.IPv4Address("198.51.100.2")
    assert pkt.dst_port == 53
    assert pkt.payload == b"query"
    assert pkt.ttl == 32


def test_parse_rejects_unsupported_and_malformed():
    assert parse_raw(build_tcp("10.0.0.1", 1000, "10.0.0.2", 80)) is None
    assert parse_raw(build_udp6("2001:db8::1", 1000, "2001:db8::2", 53, b"x")) is None
    assert parse_raw(b"") is None
    assert parse_raw(b"garbage that is not an ip packet") is None

    raw = build_udp("10.0.0.1", 1000, "10.0.0.2", 53, b"payload")
    # truncated inside the UDP header
    assert parse_raw(raw[:24]) is None


def _fragment(mf: int, offset: int) -> bytes:
    udp = dpkt.udp.UDP(sport=1000, dport=53, data=b"x" * 16)
    udp.ulen = len(udp)
    ip = dpkt.ip.IP(src=b"\x0a\x00\x00\x01", dst=b"\x0a\x00\x00\x02", p=dpkt.ip.IP_PROTO_UDP, data=udp)
    ip.mf = mf
    ip.offset = offset
    ip.len = len(ip)
    return bytes(ip)


def test_parse_rejects_first_fragment():
    raw = _fragment(mf=1, offset=0)
    # more-fragments bit set in the flags/offset word
    assert raw[6] & 0x20
    assert parse_raw(raw) is None


def test_parse_rejects_trailing_fragment():
    # 185 eight-byte units, the second fragment of a 1500-byte MTU split
    raw = _fragment(mf=0, offset=185)
    assert int.from_bytes(raw[6:8], "big") & 0x1FFF == 185
    assert parse_raw(raw) is None


def test_parse_accepts_dont_fragment():
    udp = dpkt.udp.UDP(sport=1000, dport=53, data=b"x" * 16)
    udp.ulen = len(udp)
    ip = dpkt.ip.IP(src=b"\x0a\x00\x00\x01", dst=b"\x0a\x00\x00\x02", p=dpkt.ip.IP_PROTO_UDP, data=udp)
    ip.df = 1
    ip.len = len(ip)
    packet = parse_raw(bytes(ip))
    assert packet is not None
    assert packet.payload == b"x" * 16


def test_build_packet_has_valid_headers():
    pkt = UDPPacket(
        src_ip=ipaddress.IPv4Address("198.51.100.2"),
        src_port=53,
        dst_ip=ipaddress.IPv4Address("10.0.0.2"),
        dst_port=50000,
        payload=b"\x01\x02\x03response",
    )
    raw = build_packet(pkt)
    ip = dpkt.ip.IP(raw)
    assert ip.v == 4
    assert ip.p == dpkt.ip.IP_PROTO_UDP
    assert ip.len == len(raw)
    assert ip.src == pkt.src_ip.packed
    assert ip.dst == pkt.dst_ip.packed
    # a valid header checksums to zero
    assert dpkt.in_cksum(raw[:20]) == 0
    assert isinstance(ip.data, dpkt.udp.UDP)
    assert ip.data.ulen == 8 + len(pkt.payload)
    assert _udp_checksum_ok(ip)

    parsed = parse_raw(raw)
    assert parsed == pkt


def test_build_packet_empty_payload():
    pkt = UDPPacket(
        src_ip=ipaddress.IPv4Address("192.0.2.9"),
        src_port=123,
        dst_ip=ipaddress.IPv4Address("10.0.0.3"),
        dst_port=123,
        payload=b"",
    )
    raw = build_packet(pkt)
    assert len(raw) == 28
    assert parse_raw(raw).payload == b""
