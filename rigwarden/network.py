"""
RigWarden Network probes
Primary IP, gateway, interfaces, external IP, ping latency and traffic
counters. Ping, traffic and external-IP lookups go through caller-owned
BoundedCache instances.
"""

import logging
import re
import time

import requests

from rigwarden.config import (
    PING_TARGET, PING_TIMEOUT, EXTERNAL_IP_URL, EXTERNAL_IP_TIMEOUT,
    PING_CACHE_SIZE, PING_CACHE_TTL,
    TRAFFIC_CACHE_SIZE, TRAFFIC_CACHE_TTL,
    EXTERNAL_IP_CACHE_SIZE, EXTERNAL_IP_CACHE_TTL,
)
from rigwarden.errors import ProbeFailure
from rigwarden.lru_cache import BoundedCache
from rigwarden.models import NetworkInfo, SystemType, TrafficInfo
from rigwarden.shell import CommandRunner

logger = logging.getLogger(__name__)

_EXTERNAL_IP_KEY = "external-ip"
_VIRTUAL_PREFIXES = ("ip", "sit", "rmnet", "umts", "rev_")


def is_physical_interface(name):
    """Android exposes a zoo of tunnel / modem interfaces nobody wants to see."""
    if not name or name in ("dummy0", "p2p0"):
        return False
    if name.startswith(_VIRTUAL_PREFIXES):
        return False
    return "_" not in name and "@" not in name


def parse_proc_net_dev(text):
    """{iface: (rx_bytes, tx_bytes)} from /proc/net/dev."""
    counters = {}
    for line in text.splitlines()[2:]:
        if ":" not in line:
            continue
        name, _, data = line.partition(":")
        fields = data.split()
        if len(fields) < 9:
            continue
        counters[name.strip()] = (int(fields[0]), int(fields[8]))
    return counters


class NetworkProbe:

    def __init__(self, runner=None, system_type=SystemType.linux,
                 ping_cache=None, traffic_cache=None, external_ip_cache=None,
                 http_get=requests.get, clock=time.time):
        self.runner = runner or CommandRunner()
        self.system_type = system_type
        self.ping_cache = ping_cache or BoundedCache(PING_CACHE_SIZE)
        self.traffic_cache = traffic_cache or BoundedCache(TRAFFIC_CACHE_SIZE)
        self.external_ip_cache = external_ip_cache or BoundedCache(EXTERNAL_IP_CACHE_SIZE)
        self._http_get = http_get
        self._clock = clock

    @property
    def is_termux(self):
        return self.system_type == SystemType.termux

    # ── Addresses ───────────────────────────────────────────

    def primary_ip(self):
        cmd = "ip -4 addr show wlan0 2>/dev/null" if self.is_termux else "ip -4 addr show"
        try:
            out = self.runner.output(cmd)
        except ProbeFailure:
            return "Unknown"
        for ip in re.findall(r"inet\s+([0-9.]+)", out):
            if not ip.startswith("127."):
                return ip
        return "Unknown"

    def gateway(self):
        try:
            routes = self.runner.output("ip route")
        except ProbeFailure:
            return "Unknown"
        match = re.search(r"default via ([0-9.]+)", routes)
        if match:
            return match.group(1)
        if self.is_termux:
            # no default route visible without root: guess .1 of the first subnet
            subnet = re.search(r"([0-9.]+)/\d+", routes)
            if subnet:
                octets = subnet.group(1).split(".")
                octets[3] = "1"
                return ".".join(octets)
        return "Unknown"

    def interfaces(self):
        try:
            if self.is_termux:
                out = self.runner.output("ip -br link show")
                names = [line.split()[0] for line in out.splitlines() if line.strip()]
                names = [n for n in names if is_physical_interface(n)]
                return names or ["lo", "wlan0"]
            names = self.runner.output("ls /sys/class/net").split()
        except ProbeFailure:
            return ["Unknown"]
        return names or ["Unknown"]

    def external_ip(self):
        cached = self.external_ip_cache.get(_EXTERNAL_IP_KEY, ttl=EXTERNAL_IP_CACHE_TTL)
        if cached:
            return cached
        try:
            resp = self._http_get(EXTERNAL_IP_URL, timeout=EXTERNAL_IP_TIMEOUT)
            resp.raise_for_status()
            ip = resp.text.strip()
        except requests.RequestException as e:
            logger.warning(f"[NET] External IP lookup failed: {e}")
            return "Unknown"
        if not ip:
            return "Unknown"
        self.external_ip_cache.set(_EXTERNAL_IP_KEY, ip)
        return ip

    # ── Latency ─────────────────────────────────────────────

    def ping(self, target=PING_TARGET):
        """Round-trip ms to ``target``, -1 when unreachable."""
        cached = self.ping_cache.get(target, ttl=PING_CACHE_TTL)
        if cached is not None:
            return cached
        flag = "-W" if self.is_termux else "-w"
        latency = -1.0
        try:
            out = self.runner.output(f"ping -c 1 {flag} 2 {target}", timeout=PING_TIMEOUT)
            match = re.search(r"time[=<]([\d.]+)\s*ms", out)
            if match:
                latency = float(match.group(1))
        except ProbeFailure as e:
            logger.debug(f"[NET] Ping {target} failed: {e}")
        self.ping_cache.set(target, latency)
        return latency

    # ── Traffic ─────────────────────────────────────────────

    def traffic(self):
        """Summed counters over physical interfaces, with rates from the previous sample."""
        now = self._clock()
        counters = parse_proc_net_dev(self.runner.read_file("/proc/net/dev"))
        rx_total = tx_total = 0
        rx_speed = tx_speed = 0.0
        for name, (rx, tx) in counters.items():
            if name == "lo" or not is_physical_interface(name):
                continue
            rx_total += rx
            tx_total += tx
            previous = self.traffic_cache.get(name, ttl=TRAFFIC_CACHE_TTL)
            if previous is not None:
                prev_rx, prev_tx, prev_ts = previous
                elapsed = now - prev_ts
                # counters reset on interface restart
                if elapsed > 0 and rx >= prev_rx and tx >= prev_tx:
                    rx_speed += (rx - prev_rx) / elapsed
                    tx_speed += (tx - prev_tx) / elapsed
            self.traffic_cache.set(name, (rx, tx, now))
        return TrafficInfo(
            rx_bytes=rx_total, tx_bytes=tx_total,
            rx_speed=round(rx_speed, 2), tx_speed=round(tx_speed, 2),
            timestamp=now,
        )

    # ── Aggregate ───────────────────────────────────────────

    def network_info(self) -> NetworkInfo:
        try:
            traffic = self.traffic()
        except (ProbeFailure, ValueError) as e:
            logger.warning(f"[NET] Traffic counters unavailable: {e}")
            traffic = TrafficInfo(timestamp=self._clock())
        return NetworkInfo(
            primary_ip=self.primary_ip(),
            external_ip=self.external_ip(),
            gateway=self.gateway(),
            interfaces=tuple(self.interfaces()),
            ping={PING_TARGET: self.ping()},
            traffic=traffic,
        )
