"""Host resource and connectivity probes.

All probes are time-bounded and report failures as data instead of
raising, so one unreachable endpoint cannot stall a health cycle.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import psutil

logger = logging.getLogger(__name__)


@dataclass
class SystemSnapshot:
    """Resource usage of the host running the pipeline.

    Attributes:
        disk_percent: Used space on the workspace filesystem.
        memory_percent: Used physical memory.
        load_1m: One-minute load average.
        cpu_count: Logical CPUs.
    """

    disk_percent: float
    memory_percent: float
    load_1m: float
    cpu_count: int

    @property
    def load_per_core(self) -> float:
        return self.load_1m / max(self.cpu_count, 1)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "disk_percent": self.disk_percent,
            "memory_percent": self.memory_percent,
            "load_1m": self.load_1m,
            "cpu_count": self.cpu_count,
            "load_per_core": round(self.load_per_core, 2),
        }


@dataclass
class ConnectivitySnapshot:
    """Result of the network and agent API reachability probes.

    An ``*_error`` of None means the probe succeeded.
    """

    network_target: str
    api_target: str
    network_error: str | None = None
    api_error: str | None = None

    @property
    def network_ok(self) -> bool:
        return self.network_error is None

    @property
    def api_ok(self) -> bool:
        return self.api_error is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "network_target": self.network_target,
            "network_ok": self.network_ok,
            "network_error": self.network_error,
            "api_target": self.api_target,
            "api_ok": self.api_ok,
            "api_error": self.api_error,
        }


def system_snapshot(path: Path | str = ".") -> SystemSnapshot:
    """Sample disk, memory and load for the filesystem holding *path*."""
    disk = psutil.disk_usage(str(path))
    memory = psutil.virtual_memory()
    load_1m = psutil.getloadavg()[0]
    return SystemSnapshot(
        disk_percent=float(disk.percent),
        memory_percent=float(memory.percent),
        load_1m=float(load_1m),
        cpu_count=psutil.cpu_count() or 1,
    )


def probe_tcp(host: str, port: int, timeout: float) -> str | None:
    """Open and close a TCP connection.

    Returns:
        None on success, otherwise a short error description.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return None
    except OSError as e:
        return f"{host}:{port} unreachable ({e})"


def probe_http(url: str, timeout: float) -> str | None:
    """Send a HEAD request. Any HTTP response counts as reachable.

    Returns:
        None on success, otherwise a short error description.
    """
    request = Request(url, method="HEAD", headers={"User-Agent": "taskwarden-health"})
    try:
        with urlopen(request, timeout=timeout):
            return None
    except HTTPError:
        # The server answered; the endpoint is reachable
        return None
    except URLError as e:
        return f"{url} unreachable ({e.reason})"
    except OSError as e:
        return f"{url} unreachable ({e})"


def connectivity_snapshot(
    host: str,
    port: int,
    api_url: str,
    timeout: float,
) -> ConnectivitySnapshot:
    """Run the network and agent API probes independently."""
    snapshot = ConnectivitySnapshot(
        network_target=f"{host}:{port}",
        api_target=api_url,
        network_error=probe_tcp(host, port, timeout),
        api_error=probe_http(api_url, timeout),
    )
    if not snapshot.network_ok:
        logger.debug("Network probe failed: %s", snapshot.network_error)
    if not snapshot.api_ok:
        logger.debug("Agent API probe failed: %s", snapshot.api_error)
    return snapshot
