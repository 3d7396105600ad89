"""CLI for udpstack: replay captured tunnel traffic through the UDP stack."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import socket
import sys

from .config import ConfigError, load_config
from .ingest import RawIPWriter, iter_packets
from .logging_config import setup_logging
from .stack import UDPDirectStack
from . import __version__

log = logging.getLogger("udpstack.cli")


def build_parser():
    p = argparse.ArgumentParser(prog="udpstack", description="User-space UDP relay stack")
    p.add_argument("--log", default="INFO", help="Log level")
    p.add_argument("--version", action="version", version=f"udpstack {__version__}")
    sub = p.add_subparsers(dest="cmd")
    r = sub.add_parser("replay", help="Relay the UDP flows of a capture over real sockets")
    r.add_argument("capture", help="Path to a pcap/pcapng of tunnel-side IP traffic")
    r.add_argument("--config", help="Path to a JSON stack config (defaults to ./udpstack.json if present)", metavar="FILE")
    r.add_argument("--out", help="Write translated replies to this pcap (raw IP)", metavar="FILE")
    r.add_argument("--wait", type=float, default=2.0, help="Seconds to wait for replies after the last packet (default: 2)")
    return p


def _ip_version(raw: bytes) -> int:
    if raw and raw[0] >> 4 == 6:
        return socket.AF_INET6
    return socket.AF_INET


async def replay(packets, config, wait: float = 2.0, writer=None) -> dict:
    """Push (ts, raw) datagrams through a UDPDirectStack and collect replies."""
    loop = asyncio.get_running_loop()
    stats = {"packets": 0, "accepted": 0, "rejected": 0, "replies": 0}

    def output(buffers, families):
        for raw in buffers:
            stats["replies"] += 1
            if writer is not None:
                writer.write(raw)

    stack = UDPDirectStack.from_config(config, loop, output=output)
    stack.start()
    next_tick = loop.time() + config.recycle_interval
    try:
        for _, raw in packets:
            stats["packets"] += 1
            if stack.input(raw, _ip_version(raw)):
                stats["accepted"] += 1
            else:
                stats["rejected"] += 1
            # let endpoint creation and socket reads run between packets
            await asyncio.sleep(0)
            if loop.time() >= next_tick:
                stack.recycle()
                next_tick = loop.time() + config.recycle_interval

        deadline = loop.time() + wait
        while loop.time() < deadline:
            await asyncio.sleep(min(config.recycle_interval, max(deadline - loop.time(), 0)))
            stack.recycle()
        stats["active_flows"] = stack.active_flows
    finally:
        stack.stop()
        # give the scheduled disconnects a chance to close their transports
        await asyncio.sleep(0)
        await asyncio.sleep(0)
    return stats


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log)

    if args.cmd != "replay":
        parser.print_help()
        return 2

    try:
        config = load_config(args.config)
    except ConfigError as e:
        log.error("%s", e)
        return 2
    if args.wait < 0:
        log.error("--wait must be >= 0")
        return 2

    log.info("Replay requested for: %s", args.capture)
    writer = None
    try:
        packets = iter_packets(args.capture)
        if args.out:
            writer = RawIPWriter(args.out)
        stats = asyncio.run(replay(packets, config, wait=args.wait, writer=writer))
    except RuntimeError as e:
        log.error("%s", e)
        return 2
    finally:
        if writer is not None:
            writer.close()

    print(json.dumps(stats, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
