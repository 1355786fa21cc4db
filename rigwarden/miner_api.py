"""
RigWarden Local miner API

ccminer speaks a line protocol over short-lived TCP connections:
send ``summary`` / ``pool`` / ``threads``, read ``KEY=value;KEY=value|...``
until the socket closes. xmrig serves JSON over HTTP at ``/1/summary``.
The endpoint is discovered by probing a few host/port candidates and kept
until ``clear_cache()``.

Hashrates: MinerSummary.hashrate is kH/s, ThreadStat.hashrate is H/s.
Every call raises ProbeFailure on failure; callers own retry/fallback.
"""

import logging
import socket
import threading
from collections import namedtuple

import requests

from rigwarden.config import (
    MINER_API_HOSTS, MINER_API_PORTS, MINER_API_DEFAULT_PORT,
    MINER_API_TIMEOUT, MINER_API_TOKEN,
)
from rigwarden.errors import ProbeFailure
from rigwarden.models import MinerSummary, PoolStats, ThreadStat

logger = logging.getLogger(__name__)

MinerEndpoint = namedtuple("MinerEndpoint", ["host", "port", "protocol"])

_PROTOCOLS = {"ccminer": "tcp", "xmrig": "http"}


def parse_ccminer_records(text):
    """``A=1;B=x|A=2;B=y|`` → [{"A": "1", "B": "x"}, {"A": "2", "B": "y"}]."""
    records = []
    for chunk in text.replace("\x00", "").strip().split("|"):
        record = {}
        for pair in chunk.split(";"):
            key, sep, value = pair.strip().partition("=")
            if sep and key:
                record[key.strip()] = value.strip()
        if record:
            records.append(record)
    return records


def _num(value, cast=float, default=0):
    try:
        return cast(float(value)) if cast is int else cast(value)
    except (TypeError, ValueError):
        return default


class MinerApiClient:

    def __init__(self, hosts=None, ports=None, timeout=MINER_API_TIMEOUT,
                 token=MINER_API_TOKEN, session=None, connect=socket.create_connection):
        self.hosts = list(hosts or MINER_API_HOSTS)
        self.ports = list(ports or MINER_API_PORTS)
        self.timeout = timeout
        self.token = token
        self._session = session or requests.Session()
        self._connect = connect
        self._endpoints = {}
        self._lock = threading.Lock()

    # ── Discovery ───────────────────────────────────────────

    def clear_cache(self):
        with self._lock:
            self._endpoints.clear()

    def endpoint(self, miner):
        if miner not in _PROTOCOLS:
            raise ProbeFailure("miner-api", f"unsupported miner software: {miner!r}")
        with self._lock:
            cached = self._endpoints.get(miner)
        if cached:
            return cached
        for host in self.hosts:
            for port in self.ports:
                candidate = MinerEndpoint(host, port, _PROTOCOLS[miner])
                if self._responds(miner, candidate):
                    logger.info(f"[MINER-API] {miner} API found at {host}:{port}")
                    with self._lock:
                        self._endpoints[miner] = candidate
                    return candidate
        return MinerEndpoint(self.hosts[0], MINER_API_DEFAULT_PORT, _PROTOCOLS[miner])

    def _responds(self, miner, endpoint):
        try:
            if miner == "xmrig":
                data = self._http_summary(endpoint)
                return any(k in data for k in ("connection", "hashrate", "version"))
            raw = self._tcp_command(endpoint, "summary")
            return "VER=" in raw or "ALGO=" in raw
        except ProbeFailure:
            return False

    # ── Transports ──────────────────────────────────────────

    def _tcp_command(self, endpoint, command):
        try:
            with self._connect((endpoint.host, endpoint.port), timeout=self.timeout) as sock:
                sock.settimeout(self.timeout)
                sock.sendall(command.encode())
                chunks = []
                while True:
                    chunk = sock.recv(4096)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except OSError as e:
            raise ProbeFailure(f"ccminer {command}@{endpoint.host}:{endpoint.port}", str(e))
        text = b"".join(chunks).decode(errors="replace")
        if not text.strip():
            raise ProbeFailure(f"ccminer {command}", "empty response")
        return text

    def _http_summary(self, endpoint):
        url = f"http://{endpoint.host}:{endpoint.port}/1/summary"
        try:
            resp = self._session.get(
                url, headers={"Authorization": f"Bearer {self.token}"}, timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ProbeFailure(f"xmrig {url}", str(e))
        if not isinstance(data, dict):
            raise ProbeFailure(f"xmrig {url}", "response is not an object")
        return data

    # ── Summary ─────────────────────────────────────────────

    def summary(self, miner) -> MinerSummary:
        ep = self.endpoint(miner)
        if miner == "ccminer":
            records = parse_ccminer_records(self._tcp_command(ep, "summary"))
            if not records:
                raise ProbeFailure("ccminer summary", "no records")
            s = records[0]
            return MinerSummary(
                name="ccminer",
                version=s.get("VER", "unknown"),
                algorithm=s.get("ALGO", "unknown"),
                hashrate=_num(s.get("KHS")),
                accepted_shares=_num(s.get("ACC"), int),
                rejected_shares=_num(s.get("REJ"), int),
                uptime=_num(s.get("UPTIME"), int),
                average_share_rate=_num(s.get("ACCMN")),
                solved_blocks=_num(s.get("SOLV"), int),
            )
        data = self._http_summary(ep)
        connection = data.get("connection") or {}
        results = data.get("results") or {}
        total = (data.get("hashrate") or {}).get("total") or [0]
        return MinerSummary(
            name="xmrig",
            version=str(data.get("version", "unknown")),
            algorithm=str(data.get("algo", "unknown")),
            hashrate=_num(total[0]) / 1000,
            accepted_shares=_num(connection.get("accepted"), int),
            rejected_shares=_num(connection.get("rejected"), int),
            uptime=_num(data.get("uptime"), int),
            average_share_rate=_num(results.get("avg_time_ms")) / 1000,
            solved_blocks=sum(1 for b in results.get("best") or [] if _num(b) > 0),
        )

    # ── Pool ────────────────────────────────────────────────

    def pool(self, miner) -> PoolStats:
        ep = self.endpoint(miner)
        if miner == "ccminer":
            records = parse_ccminer_records(self._tcp_command(ep, "pool"))
            if not records:
                raise ProbeFailure("ccminer pool", "no records")
            p = records[0]
            return PoolStats(
                name=p.get("POOL", "unknown"),
                url=p.get("URL", "unknown"),
                user=p.get("USER", "unknown"),
                accepted_shares=_num(p.get("ACC"), int),
                rejected_shares=_num(p.get("REJ"), int),
                stale_shares=_num(p.get("STALE"), int),
                ping=_num(p.get("PING"), int),
                uptime=_num(p.get("UPTIME"), int),
            )
        data = self._http_summary(ep)
        connection = data.get("connection") or {}
        pool = str(connection.get("pool") or "unknown")
        return PoolStats(
            name=pool,
            url=pool,
            user="unknown",
            accepted_shares=_num(connection.get("accepted"), int),
            rejected_shares=_num(connection.get("rejected"), int),
            stale_shares=0,
            ping=_num(connection.get("ping"), int),
            uptime=_num(connection.get("uptime"), int),
        )

    # ── Threads ─────────────────────────────────────────────

    def threads(self, miner, cpu_count=1):
        """Per-core hashrate (H/s), keyed by core id."""
        ep = self.endpoint(miner)
        if miner == "xmrig":
            rows = (self._http_summary(ep).get("hashrate") or {}).get("threads") or []
            if not rows:
                raise ProbeFailure("xmrig threads", "no per-thread hashrate")
            return [
                ThreadStat(core_id=i, hashrate=_num((row or [0])[0]))
                for i, row in enumerate(rows)
            ]

        try:
            records = parse_ccminer_records(self._tcp_command(ep, "threads"))
        except ProbeFailure as e:
            logger.debug(f"[MINER-API] ccminer threads failed, using summary: {e}")
            records = []
        stats = [
            ThreadStat(
                core_id=_num(r.get("CPU", i), int, i),
                hashrate=_num(r.get("KHS")) * 1000,
            )
            for i, r in enumerate(records) if "KHS" in r
        ]
        if stats:
            return stats

        # spread the summary total evenly across the cores
        total = self.summary(miner).hashrate * 1000
        cpu_count = max(1, cpu_count)
        return [ThreadStat(core_id=i, hashrate=total / cpu_count) for i in range(cpu_count)]

    def close(self):
        self._session.close()
