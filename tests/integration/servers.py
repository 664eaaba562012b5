"""Throwaway redis-server processes for end-to-end tests.

``start_redis`` runs one standalone node. ``start_cluster`` runs
``n`` cluster-enabled nodes, splits the slot space evenly between them
with ``CLUSTER ADDSLOTS``, joins them with ``CLUSTER MEET`` and waits
for ``cluster_state:ok``.
"""
from __future__ import annotations

from dataclasses import dataclass
import pathlib
import shutil
import socket
import subprocess
import tempfile
import time

import redis

HOST = "127.0.0.1"


@dataclass
class ServerProc:
    name: str
    host: str
    port: int
    proc: subprocess.Popen
    workdir: pathlib.Path

    def client(self) -> redis.Redis:
        return redis.Redis(host=self.host, port=self.port, decode_responses=True)

    def stop(self) -> None:
        if self.proc.poll() is None:
            self.proc.terminate()
            try:
                self.proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.proc.kill()
                self.proc.wait(timeout=2)
        shutil.rmtree(self.workdir, ignore_errors=True)


def _port_free(port: int) -> bool:
    with socket.socket() as s:
        try:
            s.bind((HOST, port))
        except OSError:
            return False
    return True


def free_port(bus: bool = False) -> int:
    """A free TCP port; with ``bus``, port + 10000 is free too."""
    while True:
        with socket.socket() as s:
            s.bind((HOST, 0))
            port = s.getsockname()[1]
        if not bus:
            return port
        if port + 10000 < 65536 and _port_free(port + 10000):
            return port


def _wait_ready(host: str, port: int, timeout_sec: float = 8.0) -> None:
    deadline = time.time() + timeout_sec
    while time.time() < deadline:
        try:
            with socket.create_connection((host, port), timeout=0.5):
                return
        except OSError:
            time.sleep(0.05)
    raise RuntimeError(f"server did not become ready on {host}:{port}")


def start_redis(server: str, port: int, *extra: str) -> ServerProc:
    work = pathlib.Path(tempfile.mkdtemp(prefix="keyops-redis-"))
    conf = work / "redis.conf"
    conf.write_text(
        "\n".join(
            [
                f"bind {HOST}",
                f"port {port}",
                "save \"\"",
                "appendonly no",
                f"dir {work}",
                "daemonize no",
                *extra,
            ]
        ),
        encoding="utf-8",
    )

    proc = subprocess.Popen(
        [server, str(conf)],
        cwd=work,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    _wait_ready(HOST, port)
    return ServerProc("redis", HOST, port, proc, work)


def start_cluster(server: str, n: int = 3, timeout_sec: float = 20.0) -> list[ServerProc]:
    nodes = []
    try:
        for _ in range(n):
            nodes.append(
                start_redis(
                    server,
                    free_port(bus=True),
                    "cluster-enabled yes",
                    "cluster-config-file nodes.conf",
                    "cluster-node-timeout 5000",
                )
            )
        step = 16384 // n
        for i, node in enumerate(nodes):
            lo = i * step
            hi = 16383 if i == n - 1 else (i + 1) * step - 1
            node.client().execute_command("CLUSTER", "ADDSLOTS", *range(lo, hi + 1))
        first = nodes[0].client()
        for node in nodes[1:]:
            first.execute_command("CLUSTER", "MEET", node.host, node.port)

        deadline = time.time() + timeout_sec
        while time.time() < deadline:
            states = [node.client().execute_command("CLUSTER", "INFO") for node in nodes]
            if all("cluster_state:ok" in s and f"cluster_known_nodes:{n}" in s for s in states):
                return nodes
            time.sleep(0.1)
        raise RuntimeError("cluster did not reach cluster_state:ok")
    except BaseException:
        for node in nodes:
            node.stop()
        raise
