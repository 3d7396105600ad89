"""PCAP and PCAPNG streaming ingestion of IP datagrams.

Yields (timestamp, raw IP bytes) pairs, stripping the link-layer framing of
Ethernet, BSD loopback/utun (DLT_NULL, DLT_LOOP) and raw-IP captures. Frames of
any other link type, and Ethernet frames that do not carry IP, are skipped.
"""
from __future__ import annotations

import logging
import os
import typing as t

import dpkt

log = logging.getLogger("udpstack.ingest")

LINKTYPE_RAW = 101
_RAW_LINKTYPES = {LINKTYPE_RAW, dpkt.pcap.DLT_RAW}
_LOOPBACK_LINKTYPES = {dpkt.pcap.DLT_NULL, dpkt.pcap.DLT_LOOP}


def link_payload(linktype: int, buf: bytes) -> t.Optional[bytes]:
    """Return the IP datagram carried by a captured frame, or None."""
    if linktype in _RAW_LINKTYPES:
        return buf
    if linktype in _LOOPBACK_LINKTYPES:
        return buf[4:] if len(buf) > 4 else None
    if linktype == dpkt.pcap.DLT_EN10MB:
        try:
            eth = dpkt.ethernet.Ethernet(buf)
        except Exception:
            return None
        if not isinstance(eth.data, (dpkt.ip.IP, dpkt.ip6.IP6)):
            return None
        return bytes(eth.data)
    return None


def _iter_reader(reader) -> t.Iterator[t.Tuple[float, bytes]]:
    linktype = reader.datalink()
    for ts, buf in reader:
        raw = link_payload(linktype, buf)
        if raw is None:
            continue
        yield ts, raw


def iter_packets(path: str) -> t.Iterator[t.Tuple[float, bytes]]:
    """Yield (ts, raw_ip_bytes) for datagrams in a pcap or pcapng file.

    This is streaming and does not load the entire file in memory.
    """
    if not os.path.exists(path):
        raise RuntimeError(f"capture file not found: {path}")
    _, ext = os.path.splitext(path)
    readers = [dpkt.pcap.Reader, dpkt.pcapng.Reader]
    if ext.lower() == ".pcapng":
        readers.reverse()

    with open(path, "rb") as fh:
        for reader_cls in readers:
            fh.seek(0)
            try:
                reader = reader_cls(fh)
            except (ValueError, dpkt.UnpackError):
                continue
            log.debug("reading %s with %s", path, reader_cls.__module__)
            yield from _iter_reader(reader)
            return
    raise RuntimeError(f"no suitable reader for {path}")


class RawIPWriter:
    """Write raw IPv4 datagrams to a pcap file with LINKTYPE_RAW framing."""

    def __init__(self, path: str):
        self._fh = open(path, "wb")
        self._writer = dpkt.pcap.Writer(self._fh, snaplen=65535, linktype=LINKTYPE_RAW)
        self.count = 0

    def write(self, raw: bytes, ts: t.Optional[float] = None):
        self._writer.writepkt(raw, ts=ts)
        self.count += 1

    def close(self):
        self._writer.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
