"""Turn a metrics snapshot into the ordered list of candidate optimizations."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Union

from . import system_state as probes
from .actions import ActionRegistry, Category, SafetyTier, default_registry
from .formatting import format_size
from .system_state import SystemMetrics
from .whitelist import WhitelistStore

logger = logging.getLogger(__name__)

STARTUP_ITEMS_MIN = 5


@dataclass(frozen=True)
class CandidateAction:
    category: Category
    name: str
    description: str
    action_key: str
    tier: SafetyTier
    whitelisted: bool = False


@dataclass
class HealthReport:
    metrics: SystemMetrics
    items: List[CandidateAction] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        metrics = self.metrics
        return {
            "timestamp": metrics.timestamp.isoformat(),
            "memory_used": metrics.memory_used,
            "memory_total": metrics.memory_total,
            "disk_used": metrics.disk_used,
            "disk_total": metrics.disk_total,
            "disk_used_percent": round(metrics.disk_percent, 1),
            "uptime_days": round(metrics.uptime_days, 2),
            "optimizations": [
                dict(asdict(item), category=item.category.value, tier=item.tier.value)
                for item in self.items
            ],
        }


class Entry(NamedTuple):
    category: Category
    name: str
    description: str
    key: str


Rule = Union[Entry, Callable[[SystemMetrics], Optional[Entry]]]


def _startup_items(metrics: SystemMetrics) -> Optional[Entry]:
    count = metrics.probe(probes.LAUNCH_AGENTS)
    if count <= STARTUP_ITEMS_MIN:
        return None
    suggested = max(1, count // 2)
    return Entry(Category.STARTUP, "Startup Items", f"{count} items (suggest disable {suggested})", "startup_items")


def _cache_refresh(metrics: SystemMetrics) -> Optional[Entry]:
    size = metrics.probe(probes.CACHE_SIZE)
    description = "Refresh Finder previews, Quick Look, and Safari caches"
    if size > 0:
        description = f"Refresh {format_size(size)} of Finder/Safari caches"
    return Entry(Category.CACHE, "User Cache Refresh", description, "cache_refresh")


def _mail_downloads(metrics: SystemMetrics) -> Optional[Entry]:
    # shown for any non-zero size; the executor applies its own minimum
    size = metrics.probe(probes.MAIL_DOWNLOADS)
    if size <= 0:
        return None
    return Entry(Category.APPLICATIONS, "Mail Downloads", f"Recover {format_size(size)} of Mail attachments", "mail_downloads")


def _saved_state(metrics: SystemMetrics) -> Optional[Entry]:
    size = metrics.probe(probes.SAVED_STATE)
    if size <= 0:
        return None
    return Entry(Category.SYSTEM, "Saved State", f"Clear {format_size(size)} of stale saved states", "saved_state_cleanup")


def _swap_cleanup(metrics: SystemMetrics) -> Optional[Entry]:
    size = metrics.probe(probes.SWAP)
    if size <= 0:
        return None
    return Entry(Category.MEMORY, "Memory & Swap", f"Purge swap ({format_size(size)}) & inactive memory", "swap_cleanup")


def _login_items(metrics: SystemMetrics) -> Optional[Entry]:
    count = metrics.probe(probes.LOGIN_ITEMS)
    if count <= 0:
        return None
    return Entry(Category.STARTUP, "Login Items", f"Review {count} login items", "login_items")


def _local_snapshots(metrics: SystemMetrics) -> Optional[Entry]:
    count = metrics.probe(probes.LOCAL_SNAPSHOTS)
    if count <= 0:
        return None
    return Entry(Category.STORAGE, "Local Snapshots", f"{count} APFS local snapshots detected", "local_snapshots")


def _developer_cleanup(metrics: SystemMetrics) -> Optional[Entry]:
    size = metrics.probe(probes.DEVELOPER)
    if size <= 0:
        return None
    return Entry(Category.DEVELOPER, "Developer Cleanup", f"Recover {format_size(size)} of Xcode/simulator data", "developer_cleanup")


RULES: List[Rule] = [
    Entry(Category.SYSTEM, "System Maintenance", "Rebuild system databases & flush caches", "system_maintenance"),
    _startup_items,
    Entry(Category.NETWORK, "Network Services", "Reset network services", "network_services"),
    _cache_refresh,
    Entry(Category.SYSTEM, "Maintenance Scripts", "Run daily/weekly/monthly scripts & rotate logs", "maintenance_scripts"),
    Entry(Category.NETWORK, "Bluetooth & Wi-Fi Refresh", "Reset wireless preference caches", "radio_refresh"),
    Entry(Category.PRIVACY, "Recent Items", "Clear recent apps/documents/servers lists", "recent_items"),
    Entry(Category.SYSTEM, "Diagnostics Cleanup", "Purge old diagnostic & crash logs", "log_cleanup"),
    _mail_downloads,
    _saved_state,
    Entry(Category.INTERFACE, "Finder & Dock Refresh", "Clear Finder/Dock caches and restart", "finder_dock_refresh"),
    _swap_cleanup,
    _login_items,
    Entry(Category.SYSTEM, "Startup Cache Rebuild", "Rebuild kext caches & prelinked kernel", "startup_cache"),
    _local_snapshots,
    _developer_cleanup,
]


def build_catalog(
    metrics: SystemMetrics,
    whitelist: Optional[WhitelistStore] = None,
    registry: Optional[ActionRegistry] = None,
) -> List[CandidateAction]:
    """Evaluate every rule in declaration order and return the included items.

    A rule that raises is treated as "not included"; the rest of the catalog
    is still built. Whitelisted items stay visible and are only flagged.
    """
    registry = registry or default_registry()
    items: List[CandidateAction] = []
    seen = set()
    for rule in RULES:
        entry = _evaluate(rule, metrics)
        if entry is None:
            continue
        category, name, description, key = entry
        if key in seen:
            continue
        seen.add(key)
        items.append(
            CandidateAction(
                category=category,
                name=name,
                description=description,
                action_key=key,
                tier=registry.get(key).tier,
                whitelisted=whitelist.is_whitelisted(key) if whitelist else False,
            )
        )
    return items


def build_report(
    metrics: SystemMetrics,
    whitelist: Optional[WhitelistStore] = None,
    registry: Optional[ActionRegistry] = None,
) -> HealthReport:
    return HealthReport(metrics=metrics, items=build_catalog(metrics, whitelist, registry))


def _evaluate(rule: Rule, metrics: SystemMetrics) -> Optional[Entry]:
    if not callable(rule):
        return rule
    try:
        return rule(metrics)
    except Exception:
        logger.warning("Catalog rule %s failed; item left out", rule.__name__, exc_info=True)
        return None
