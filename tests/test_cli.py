import json
import socket
import threading

import dpkt

from udpstack.cli import main
from udpstack.ingest import iter_packets
from udpstack.packet import parse_raw
from tests.utils_packets import build_tcp, build_udp


def _echo_server():
    srv = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    srv.bind(("127.0.0.1", 0))
    srv.settimeout(5)
    port = srv.getsockname()[1]

    def run():
        try:
            data, addr = srv.recvfrom(2048)
            srv.sendto(b"echo:" + data, addr)
        except socket.timeout:
            pass
        finally:
            srv.close()

    th = threading.Thread(target=run, daemon=True)
    th.start()
    return port, th


def _write_raw_pcap(path, datagrams):
    with open(path, "wb") as fh:
        writer = dpkt.pcap.Writer(fh, linktype=101)
        for i, raw in enumerate(datagrams):
            writer.writepkt(raw, ts=1.0 + i)
        writer.close()


def test_replay_relays_and_translates_replies(tmp_path, capsys):
    port, th = _echo_server()
    capture = tmp_path / "tunnel.pcap"
    out = tmp_path / "replies.pcap"
    _write_raw_pcap(str(capture), [
        build_udp("10.0.0.2", 5353, "127.0.0.1", port, b"hello"),
        build_tcp("10.0.0.2", 40000, "127.0.0.1", 80),
    ])

    rc = main(["--log", "WARNING", "replay", str(capture), "--out", str(out), "--wait", "1.0"])
    th.join(timeout=5)
    assert rc == 0

    stats = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert stats["packets"] == 2
    assert stats["accepted"] == 1
    assert stats["rejected"] == 1
    assert stats["replies"] == 1

    replies = [parse_raw(raw) for _, raw in iter_packets(str(out))]
    assert len(replies) == 1
    reply = replies[0]
    assert str(reply.src_ip) == "127.0.0.1"
    assert reply.src_port == port
    assert str(reply.dst_ip) == "10.0.0.2"
    assert reply.dst_port == 5353
    assert reply.payload == b"echo:hello"


def test_replay_missing_capture_exits_2(tmp_path):
    assert main(["replay", str(tmp_path / "missing.pcap"), "--wait", "0"]) == 2


def test_replay_bad_config_exits_2(tmp_path):
    capture = tmp_path / "empty.pcap"
    _write_raw_pcap(str(capture), [])
    cfg = tmp_path / "bad.json"
    cfg.write_text(json.dumps({"memory_ceiling": -5}))
    assert main(["replay", str(capture), "--config", str(cfg), "--wait", "0"]) == 2


def test_no_command_prints_help(capsys):
    assert main([]) == 2
    assert "replay" in capsys.readouterr().out
