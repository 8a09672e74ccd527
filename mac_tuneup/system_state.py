"""Collect point-in-time measurements of a macOS machine.

Every probe fails soft: a missing tool, a timeout or unparseable output
produces a zero or empty result so that one absent data source never blocks
the catalog.
"""

from __future__ import annotations

import glob
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

import psutil

from .commands import Deadline, run_command
from .config import Settings
from .errors import ActionTimeout, CommandTimeout

logger = logging.getLogger(__name__)

CACHE_SIZE = "cache_size"
MAIL_DOWNLOADS = "mail_downloads"
SAVED_STATE = "saved_state"
SWAP = "swap"
DEVELOPER = "developer"
LAUNCH_AGENTS = "launch_agents"
LOGIN_ITEMS = "login_items"
LOCAL_SNAPSHOTS = "local_snapshots"

SWAP_GLOB = "/private/var/vm/swapfile*"
SNAPSHOT_PREFIX = "com.apple.TimeMachine."


@dataclass(frozen=True)
class SystemMetrics:
    timestamp: datetime
    memory_used: int
    memory_total: int
    disk_used: int
    disk_total: int
    disk_percent: float
    uptime_days: float
    probes: Mapping[str, int] = field(default_factory=dict)

    def probe(self, name: str) -> int:
        return self.probes.get(name, 0)


def home() -> Path:
    return Path.home()


def cache_dir() -> str:
    return str(home() / "Library" / "Caches")


def mail_download_dirs() -> List[str]:
    base = home() / "Library"
    return [
        str(base / "Mail Downloads"),
        str(base / "Containers" / "com.apple.mail" / "Data" / "Library" / "Mail Downloads"),
    ]


def saved_state_dir() -> str:
    return str(home() / "Library" / "Saved Application State")


def developer_dirs() -> List[str]:
    dev = home() / "Library" / "Developer"
    return [
        str(dev / "Xcode" / "DerivedData"),
        str(dev / "Xcode" / "Archives"),
        str(dev / "Xcode" / "iOS DeviceSupport"),
        str(dev / "CoreSimulator" / "Caches"),
    ]


def launch_agent_dirs() -> List[str]:
    return [str(home() / "Library" / "LaunchAgents"), "/Library/LaunchAgents"]


def gather_metrics(settings: Optional[Settings] = None) -> SystemMetrics:
    """Run every probe in turn and freeze the results."""
    settings = settings or Settings()
    timeout = settings.probe_timeout
    memory_used, memory_total = memory_usage()
    disk_used, disk_total, disk_percent = disk_usage()

    probes = {
        LAUNCH_AGENTS: count_launch_agents(),
        CACHE_SIZE: directory_size(cache_dir(), timeout=timeout),
        MAIL_DOWNLOADS: total_size(mail_download_dirs(), timeout=timeout),
        SAVED_STATE: directory_size(saved_state_dir(), timeout=timeout),
        SWAP: swap_size(),
        LOGIN_ITEMS: len(list_login_items(timeout=timeout)),
        LOCAL_SNAPSHOTS: count_local_snapshots(timeout=timeout),
        DEVELOPER: total_size(developer_dirs(), timeout=timeout),
    }
    return SystemMetrics(
        timestamp=datetime.now(),
        memory_used=memory_used,
        memory_total=memory_total,
        disk_used=disk_used,
        disk_total=disk_total,
        disk_percent=disk_percent,
        uptime_days=uptime_days(),
        probes=MappingProxyType(probes),
    )


def memory_usage() -> Tuple[int, int]:
    try:
        memory = psutil.virtual_memory()
    except (OSError, RuntimeError, psutil.Error) as exc:
        logger.debug("Memory probe unavailable: %s", exc)
        return 0, 0
    return int(memory.used), int(memory.total)


def disk_usage(path: Optional[str] = None) -> Tuple[int, int, float]:
    try:
        usage = psutil.disk_usage(path or str(home()))
    except (OSError, RuntimeError, psutil.Error) as exc:
        logger.debug("Disk probe unavailable: %s", exc)
        return 0, 0, 0.0
    percent = usage.used / usage.total * 100 if usage.total else 0.0
    return int(usage.used), int(usage.total), percent


def uptime_days() -> float:
    try:
        boot = psutil.boot_time()
    except (OSError, RuntimeError, psutil.Error) as exc:
        logger.debug("Uptime probe unavailable: %s", exc)
        return 0.0
    return max(0.0, (time.time() - boot) / 86400)


def directory_size(path: str, timeout: float = 30.0) -> int:
    """Apparent size in bytes of everything under ``path``; 0 if missing."""
    if not path or not os.path.lexists(path):
        return 0
    if not os.path.isdir(path) or os.path.islink(path):
        try:
            return os.lstat(path).st_size
        except OSError:
            return 0
    deadline = Deadline(timeout)
    total = 0
    try:
        for root, _dirs, files in os.walk(path):
            deadline.check()
            for name in files:
                try:
                    total += os.lstat(os.path.join(root, name)).st_size
                except OSError:
                    continue
    except ActionTimeout:
        logger.debug("Sizing %s took longer than %.0fs", path, timeout)
        return 0
    return total


def total_size(paths: Iterable[str], timeout: float = 30.0) -> int:
    return sum(directory_size(path, timeout=timeout) for path in paths)


def swap_size(pattern: str = SWAP_GLOB) -> int:
    total = 0
    for swapfile in glob.glob(pattern):
        try:
            total += os.stat(swapfile).st_size
        except OSError:
            continue
    return total


def list_launch_agents(roots: Optional[Sequence[str]] = None) -> List[str]:
    """Agent names across the search roots, each name counted once."""
    seen = set()
    names: List[str] = []
    for root in roots if roots is not None else launch_agent_dirs():
        try:
            entries = sorted(os.listdir(root))
        except OSError:
            continue
        for entry in entries:
            if entry.startswith(".") or entry in seen:
                continue
            seen.add(entry)
            names.append(entry)
    return names


def count_launch_agents(roots: Optional[Sequence[str]] = None) -> int:
    return len(list_launch_agents(roots))


def list_local_snapshots(timeout: float = 30.0) -> List[str]:
    return parse_local_snapshots(_capture(["tmutil", "listlocalsnapshots", "/"], timeout))


def parse_local_snapshots(output: str) -> List[str]:
    snapshots: List[str] = []
    for line in output.splitlines():
        name = line.strip()
        if name.startswith(SNAPSHOT_PREFIX) and name not in snapshots:
            snapshots.append(name)
    return snapshots


def count_local_snapshots(timeout: float = 30.0) -> int:
    return len(list_local_snapshots(timeout=timeout))


def list_login_items(timeout: float = 30.0) -> List[str]:
    output = _capture(
        ["osascript", "-e", 'tell application "System Events" to get the name of every login item'],
        timeout,
    ).strip()
    if not output or output == "missing value":
        return []
    items: List[str] = []
    for part in output.split(", "):
        name = part.strip().strip('"')
        if name and name not in items:
            items.append(name)
    return items


def _capture(argv: List[str], timeout: float) -> str:
    try:
        result = run_command(argv, timeout=timeout)
    except CommandTimeout as exc:
        logger.debug("Probe %s: %s", argv[0], exc)
        return ""
    if not result.ok:
        logger.debug("Probe %s failed: %s", argv[0], result.reason())
        return ""
    return result.stdout
