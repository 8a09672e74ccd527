"""Optimization actions and the registry that maps keys to them.

Each action is a procedure run against an :class:`ActionContext`. The context
is the only way a procedure touches the system: it runs commands under the
action's deadline, removes files, honours dry-run mode and records one
:class:`StepOutcome` per sub-step so the executor can apply the all-of policy.
"""

from __future__ import annotations

import glob
import logging
import os
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from . import cleanup
from .commands import (
    Capability,
    Deadline,
    PrivilegeSession,
    Runner,
    printable,
    probe_capability,
    run_command,
)
from .config import Settings
from .errors import ActionTimeout, CommandTimeout, UnknownActionError
from .system_state import (
    cache_dir,
    developer_dirs,
    home,
    launch_agent_dirs,
    list_launch_agents,
    mail_download_dirs,
    parse_local_snapshots,
    saved_state_dir,
    total_size,
)

logger = logging.getLogger(__name__)

LSREGISTER = (
    "/System/Library/Frameworks/CoreServices.framework/Frameworks/"
    "LaunchServices.framework/Support/lsregister"
)
DYNAMIC_PAGER = "/System/Library/LaunchDaemons/com.apple.dynamic_pager.plist"
SYSTEM_DIAGNOSTICS = "/Library/Logs/DiagnosticReports"
LOGIN_ITEMS_PANE = "x-apple.systempreferences:com.apple.LoginItems-Settings.extension"


class SafetyTier(str, Enum):
    SAFE = "safe"
    REQUIRES_CONFIRMATION = "requires-confirmation"


class Category(str, Enum):
    SYSTEM = "system"
    NETWORK = "network"
    CACHE = "cache"
    PRIVACY = "privacy"
    STARTUP = "startup"
    MEMORY = "memory"
    STORAGE = "storage"
    DEVELOPER = "developer"
    APPLICATIONS = "applications"
    INTERFACE = "interface"


@dataclass(frozen=True)
class StepOutcome:
    name: str
    ok: bool
    detail: str = ""
    required: bool = True


@dataclass(frozen=True)
class Target:
    label: str
    path: str


@dataclass(frozen=True)
class Threshold:
    """Minimum measured effect below which an action is not worth running."""

    label: str
    measure: Callable[[Settings], int]
    minimum: Callable[[Settings], int]


def _no_paths() -> List[str]:
    return []


@dataclass(frozen=True)
class Action:
    key: str
    title: str
    category: Category
    tier: SafetyTier
    procedure: Callable[["ActionContext"], None]
    timeout: float = 60.0
    paths: Callable[[], List[str]] = _no_paths
    threshold: Optional[Threshold] = None


class ActionContext:
    """Everything a running procedure may use, bound to one action run."""

    def __init__(
        self,
        settings: Settings,
        deadline: Deadline,
        dry_run: bool = False,
        privileges: Optional[PrivilegeSession] = None,
        runner: Runner = run_command,
    ) -> None:
        self.settings = settings
        self.deadline = deadline
        self.dry_run = dry_run
        self.privileges = privileges or PrivilegeSession()
        self.steps: List[StepOutcome] = []
        self.notes: List[str] = []
        self._runner = runner
        self._capabilities: Dict[str, Capability] = {}

    def capability(self, tool: str) -> Capability:
        if tool not in self._capabilities:
            self._capabilities[tool] = probe_capability(tool)
        return self._capabilities[tool]

    def note(self, message: str) -> None:
        logger.info(message)
        self.notes.append(message)

    def record(self, name: str, ok: bool, detail: str = "", required: bool = True) -> bool:
        self.steps.append(StepOutcome(name, ok, detail, required))
        if ok:
            logger.debug("%s: ok %s", name, detail)
        else:
            logger.warning("%s failed: %s", name, detail or "no detail")
        return ok

    def run(
        self,
        name: str,
        argv: Sequence[str],
        sudo: bool = False,
        timeout: Optional[float] = None,
        required: bool = True,
    ) -> bool:
        """Run a mutating command as one step. Returns whether it succeeded.

        ``timeout`` bounds this step alone; running out of the action's own
        deadline raises :class:`ActionTimeout` instead of failing the step.
        """
        self.deadline.check()
        if self.dry_run:
            prefix = "sudo " if sudo else ""
            return self.record(name, True, f"would run: {prefix}{printable(argv)}", required)
        if sudo:
            if not self.privileges.acquire():
                return self.record(name, False, "administrator privileges unavailable", required)
            argv = self.privileges.wrap(argv)
        remaining = self.deadline.remaining()
        step_bounded = timeout is not None and timeout < remaining
        try:
            result = self._runner(argv, timeout=timeout if step_bounded else remaining)
        except CommandTimeout as exc:
            if step_bounded:
                return self.record(name, False, f"timed out after {timeout:.0f}s", required)
            raise ActionTimeout(f"{name} did not finish within {self.deadline.seconds:.0f}s") from exc
        return self.record(name, result.ok, "" if result.ok else result.reason(), required)

    def output(self, argv: Sequence[str], timeout: float = 30.0) -> str:
        """Stdout of a read-only query; empty on any failure. Runs in dry-run too."""
        self.deadline.check()
        try:
            result = self._runner(argv, timeout=min(timeout, self.deadline.remaining()))
        except CommandTimeout:
            self.deadline.check()
            return ""
        return result.stdout if result.ok else ""

    def succeeds(self, argv: Sequence[str], timeout: float = 30.0) -> bool:
        """Whether a read-only check exits cleanly. Runs in dry-run too."""
        self.deadline.check()
        try:
            return self._runner(argv, timeout=min(timeout, self.deadline.remaining())).ok
        except CommandTimeout:
            self.deadline.check()
            return False

    def remove(self, target: Target, required: bool = False) -> bool:
        self.deadline.check()
        if not os.path.lexists(target.path):
            return self.record(target.label, True, "nothing to remove", required)
        removed = cleanup.remove_path(target.path, dry_run=self.dry_run)
        detail = "would remove" if self.dry_run else "removed"
        return self.record(target.label, removed, detail if removed else "could not remove", required)

    def delete_matching(
        self,
        name: str,
        root: str,
        pattern: str = "*",
        age_days: int = 0,
        kind: str = "f",
        required: bool = False,
    ) -> int:
        count = cleanup.delete_matching(
            root, pattern, age_days, kind, dry_run=self.dry_run, deadline=self.deadline
        )
        verb = "would remove" if self.dry_run else "removed"
        self.record(name, True, f"{verb} {count} item(s)", required)
        return count


class ActionRegistry:
    """Ordered mapping of action keys to actions."""

    def __init__(self, actions: Sequence[Action] = ()) -> None:
        self._actions: Dict[str, Action] = {}
        for action in actions:
            self.register(action)

    def register(self, action: Action) -> None:
        if action.key in self._actions:
            raise ValueError(f"action {action.key!r} is already registered")
        self._actions[action.key] = action

    def get(self, key: str) -> Action:
        try:
            return self._actions[key]
        except KeyError:
            raise UnknownActionError(key) from None

    def keys(self) -> List[str]:
        return list(self._actions)

    def __contains__(self, key: object) -> bool:
        return key in self._actions

    def __iter__(self) -> Iterator[Action]:
        return iter(self._actions.values())

    def __len__(self) -> int:
        return len(self._actions)


def _library(*parts: str) -> str:
    return str(home().joinpath("Library", *parts))


def _find_delete(root: str, pattern: str, age_days: int) -> List[str]:
    argv = ["find", root, "-type", "f", "-name", pattern]
    if age_days > 0:
        argv += ["-mtime", f"+{age_days}"]
    return argv + ["-delete"]


def flush_dns(ctx: ActionContext) -> None:
    # the responder only needs a restart once the cache is gone
    if ctx.run("flush DNS cache", ["dscacheutil", "-flushcache"], sudo=True):
        ctx.run("restart mDNSResponder", ["killall", "-HUP", "mDNSResponder"], sudo=True)


def system_maintenance(ctx: ActionContext) -> None:
    ctx.run(
        "rebuild LaunchServices database",
        [LSREGISTER, "-kill", "-r", "-domain", "local", "-domain", "system", "-domain", "user"],
        timeout=10,
        required=False,
    )
    flush_dns(ctx)
    status = ctx.output(["mdutil", "-s", "/"])
    if "indexing disabled" in status.lower():
        ctx.note("Spotlight indexing disabled")
    else:
        ctx.note("Spotlight index functioning")
    ctx.run("refresh Bluetooth services", ["pkill", "-f", "blued"], sudo=True, required=False)


def startup_items(ctx: ActionContext) -> None:
    agents = list_launch_agents()
    suggested = max(1, len(agents) // 2)
    ctx.note(f"{len(agents)} launch agents installed; review and disable about {suggested}")
    ctx.run("open LaunchAgents folder", ["open", launch_agent_dirs()[0]], required=False)


def network_services(ctx: ActionContext) -> None:
    flush_dns(ctx)


def network_optimization(ctx: ActionContext) -> None:
    flush_dns(ctx)
    ctx.run("clear ARP cache", ["arp", "-d", "-a"], sudo=True, required=False)


def cache_targets() -> List[Target]:
    caches = cache_dir()
    return [
        Target("Quick Look thumbnails", os.path.join(caches, "com.apple.QuickLook.thumbnailcache")),
        Target("Icon Services store", os.path.join(caches, "com.apple.iconservices.store")),
        Target("Icon Services cache", os.path.join(caches, "com.apple.iconservices")),
        Target("Safari WebKit cache", os.path.join(caches, "com.apple.Safari", "WebKitCache")),
        Target("Safari favicon cache", os.path.join(caches, "com.apple.Safari", "Favicon")),
    ]


def cache_refresh(ctx: ActionContext) -> None:
    ctx.run("reset Quick Look cache", ["qlmanage", "-r", "cache"], required=False)
    ctx.run("reload Quick Look server", ["qlmanage", "-r"], required=False)
    for target in cache_targets():
        ctx.remove(target)


def maintenance_scripts(ctx: ActionContext) -> None:
    ctx.run("rotate system logs", ["newsyslog"], sudo=True, timeout=120)


def radio_refresh(ctx: ActionContext) -> None:
    # restarts services only; pairings and saved networks are left alone
    ctx.run("refresh Bluetooth controller", ["pkill", "-HUP", "bluetoothd"], sudo=True, required=False)
    interface = wifi_interface(ctx.output(["networksetup", "-listallhardwareports"]))
    if interface:
        quoted = shlex.quote(interface)
        ctx.run(
            "restart Wi-Fi interface",
            ["sh", "-c", f"trap '' INT TERM; ifconfig {quoted} down; sleep 1; ifconfig {quoted} up"],
            sudo=True,
        )
    else:
        ctx.note("Wi-Fi interface not found")
    ctx.run(
        "restart AirDrop interface",
        ["sh", "-c", "trap '' INT TERM; ifconfig awdl0 down; ifconfig awdl0 up"],
        sudo=True,
        required=False,
    )


def wifi_interface(listing: str) -> Optional[str]:
    lines = listing.splitlines()
    for index, line in enumerate(lines):
        if "Wi-Fi" in line and index + 1 < len(lines):
            fields = lines[index + 1].split()
            if len(fields) >= 2 and fields[0] == "Device:":
                return fields[1]
    return None


def recent_items(ctx: ActionContext) -> None:
    shared = _library("Application Support", "com.apple.sharedfilelist")
    if os.path.isdir(shared):
        ctx.delete_matching("clear shared file lists", shared, "*.sfl2")
        ctx.delete_matching("clear shared file lists (sfl3)", shared, "*.sfl3")
    ctx.remove(Target("recent items preferences", _library("Preferences", "com.apple.recentitems.plist")))
    ctx.run(
        "reset recent documents limit",
        ["defaults", "delete", "NSGlobalDomain", "NSRecentDocumentsLimit"],
        required=False,
    )


def user_log_dirs() -> List[str]:
    return [_library("Logs", "DiagnosticReports"), _library("Logs", "corecaptured")]


def log_cleanup(ctx: ActionContext) -> None:
    age = ctx.settings.log_age_days
    for path in user_log_dirs():
        ctx.delete_matching(f"clear {os.path.basename(path)}", path, "*", age)
    if not os.path.isdir(SYSTEM_DIAGNOSTICS):
        ctx.note("No system diagnostic logs found")
        return
    for pattern in ("*.crash", "*.panic"):
        ctx.run(
            f"remove system {pattern} reports",
            _find_delete(SYSTEM_DIAGNOSTICS, pattern, age),
            sudo=True,
            required=False,
        )


def mail_downloads(ctx: ActionContext) -> None:
    folders = [path for path in mail_download_dirs() if os.path.isdir(path)]
    if not folders:
        ctx.note("No Mail download folders found")
        return
    for path in folders:
        ctx.delete_matching(
            f"remove attachments older than {ctx.settings.mail_age_days} days",
            path,
            "*",
            ctx.settings.mail_age_days,
        )


def saved_state_cleanup(ctx: ActionContext) -> None:
    state_dir = saved_state_dir()
    if not os.path.isdir(state_dir):
        ctx.note("No saved states directory found")
        return
    ctx.delete_matching(
        "remove old saved states",
        state_dir,
        "*.savedState",
        ctx.settings.saved_state_age_days,
        kind="d",
    )


def finder_dock_targets() -> List[Target]:
    return [
        Target("Finder cache", os.path.join(cache_dir(), "com.apple.finder")),
        Target("Dock icon cache", os.path.join(cache_dir(), "com.apple.dock.iconcache")),
    ]


def finder_dock_refresh(ctx: ActionContext) -> None:
    for target in finder_dock_targets():
        ctx.remove(target)
    ctx.note("Restarting Finder & Dock; unsaved Finder window state is lost")
    ctx.run("restart Finder", ["killall", "Finder"], required=False)
    ctx.run("restart Dock", ["killall", "Dock"], required=False)


def swap_cleanup(ctx: ActionContext) -> None:
    if ctx.run("unload dynamic pager", ["launchctl", "unload", DYNAMIC_PAGER], sudo=True):
        ctx.run("reload dynamic pager", ["launchctl", "load", DYNAMIC_PAGER], sudo=True, required=False)


def login_items(ctx: ActionContext) -> None:
    ctx.run("open Login Items settings", ["open", LOGIN_ITEMS_PANE], required=False)


def startup_cache(ctx: ActionContext) -> None:
    ctx.note("Startup cache rebuild skipped (handled by macOS)")


def local_snapshots(ctx: ActionContext) -> None:
    if not ctx.capability("tmutil").available:
        ctx.record("thin local snapshots", False, "tmutil not available on this system")
        return
    before = len(parse_local_snapshots(ctx.output(["tmutil", "listlocalsnapshots", "/"])))
    if before == 0:
        ctx.note("No local snapshots to thin")
        return
    thinned = ctx.run(
        "thin local snapshots", ["tmutil", "thinlocalsnapshots", "/", "9999999999", "4"], sudo=True
    )
    if thinned and not ctx.dry_run:
        after = len(parse_local_snapshots(ctx.output(["tmutil", "listlocalsnapshots", "/"])))
        ctx.note(f"Removed {max(0, before - after)} snapshots (remaining: {after})")


def developer_targets() -> List[Target]:
    dev = _library("Developer")
    return [
        Target("Xcode DerivedData", os.path.join(dev, "Xcode", "DerivedData")),
        Target("iOS Device support files", os.path.join(dev, "Xcode", "iOS DeviceSupport")),
        Target("CoreSimulator caches", os.path.join(dev, "CoreSimulator", "Caches")),
    ]


def developer_cleanup(ctx: ActionContext) -> None:
    for target in developer_targets():
        ctx.remove(target)
    if ctx.capability("xcrun").available:
        ctx.run("remove unavailable simulators", ["xcrun", "simctl", "delete", "unavailable"], required=False)


def spotlight_targets() -> List[Target]:
    return [
        Target("CoreSpotlight cache", _library("Metadata", "CoreSpotlight")),
        Target(
            "Spotlight saved state",
            os.path.join(saved_state_dir(), "com.apple.spotlight.Spotlight.savedState"),
        ),
    ]


def spotlight_cache_cleanup(ctx: ActionContext) -> None:
    for target in spotlight_targets():
        ctx.remove(target)
    ctx.note("System settings may need a logout to display correctly")


def preference_files() -> List[str]:
    return sorted(glob.glob(os.path.join(glob.escape(_library("Preferences")), "*.plist")))


def _applescript_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _login_item_property(ctx: ActionContext, prop: str) -> List[str]:
    reply = ctx.output(
        ["osascript", "-e", f'tell application "System Events" to get the {prop} of every login item']
    ).strip()
    if not reply or reply == "missing value":
        return []
    return [part.strip() for part in reply.split(", ")]


def broken_login_items(ctx: ActionContext) -> List[str]:
    names = _login_item_property(ctx, "name")
    paths = _login_item_property(ctx, "path")
    if len(names) != len(paths):
        logger.debug("Login item names and paths disagree (%d vs %d)", len(names), len(paths))
        return []
    return [
        name
        for name, path in zip(names, paths)
        if path and path != "missing value" and not os.path.exists(path)
    ]


def fix_broken_configs(ctx: ActionContext) -> None:
    removed: List[str] = []
    if ctx.capability("plutil").available:
        broken = [path for path in preference_files() if not ctx.succeeds(["plutil", "-lint", "-s", path])]
        removed = [path for path in broken if cleanup.remove_path(path, dry_run=ctx.dry_run)]
        verb = "would remove" if ctx.dry_run else "removed"
        ctx.record(
            "repair preference files",
            len(removed) == len(broken),
            f"{verb} {len(removed)} of {len(broken)} broken file(s)",
            required=False,
        )
    else:
        ctx.record("repair preference files", False, "plutil not available on this system", required=False)

    stale = broken_login_items(ctx)
    if stale:
        script: List[str] = []
        for name in stale:
            script += ["-e", f'tell application "System Events" to delete login item {_applescript_string(name)}']
        ctx.run("remove broken login items", ["osascript", *script], required=False)
    else:
        ctx.record("remove broken login items", True, "all login items valid", required=False)
    ctx.note(f"{len(removed)} preference file(s) and {len(stale)} login item(s) repaired")


def _target_paths(targets: Callable[[], List[Target]]) -> Callable[[], List[str]]:
    return lambda: [target.path for target in targets()]


MAIL_THRESHOLD = Threshold(
    label="Mail downloads",
    measure=lambda settings: total_size(mail_download_dirs(), timeout=settings.probe_timeout),
    minimum=lambda settings: settings.mail_downloads_min_bytes,
)


def default_actions() -> List[Action]:
    safe, confirm = SafetyTier.SAFE, SafetyTier.REQUIRES_CONFIRMATION
    return [
        Action("system_maintenance", "System Maintenance", Category.SYSTEM, safe, system_maintenance),
        Action("startup_items", "Startup Items", Category.STARTUP, confirm, startup_items, timeout=10),
        Action("network_services", "Network Services", Category.NETWORK, safe, network_services, timeout=30),
        Action(
            "cache_refresh", "User Cache Refresh", Category.CACHE, safe, cache_refresh,
            paths=_target_paths(cache_targets),
        ),
        Action(
            "maintenance_scripts", "Maintenance Scripts", Category.SYSTEM, safe, maintenance_scripts,
            timeout=150,
        ),
        Action("radio_refresh", "Bluetooth & Wi-Fi Refresh", Category.NETWORK, safe, radio_refresh, timeout=30),
        Action("recent_items", "Recent Items", Category.PRIVACY, safe, recent_items, timeout=30),
        Action(
            "log_cleanup", "Diagnostics Cleanup", Category.SYSTEM, safe, log_cleanup,
            timeout=120, paths=user_log_dirs,
        ),
        Action(
            "mail_downloads", "Mail Downloads", Category.APPLICATIONS, safe, mail_downloads,
            timeout=120, paths=mail_download_dirs, threshold=MAIL_THRESHOLD,
        ),
        Action(
            "saved_state_cleanup", "Saved State", Category.SYSTEM, safe, saved_state_cleanup,
            paths=lambda: [saved_state_dir()],
        ),
        Action(
            "finder_dock_refresh", "Finder & Dock Refresh", Category.INTERFACE, safe, finder_dock_refresh,
            timeout=30, paths=_target_paths(finder_dock_targets),
        ),
        Action("swap_cleanup", "Memory & Swap", Category.MEMORY, confirm, swap_cleanup, timeout=30),
        Action("login_items", "Login Items", Category.STARTUP, safe, login_items, timeout=10),
        Action("startup_cache", "Startup Cache Rebuild", Category.SYSTEM, safe, startup_cache, timeout=10),
        Action("local_snapshots", "Local Snapshots", Category.STORAGE, safe, local_snapshots, timeout=180),
        Action(
            "developer_cleanup", "Developer Cleanup", Category.DEVELOPER, confirm, developer_cleanup,
            timeout=180, paths=developer_dirs,
        ),
        Action(
            "network_optimization", "Network Optimization", Category.NETWORK, safe, network_optimization,
            timeout=30,
        ),
        Action("fix_broken_configs", "Repair Configurations", Category.SYSTEM, safe, fix_broken_configs),
        Action(
            "spotlight_cache_cleanup", "Spotlight Cache Cleanup", Category.CACHE, safe, spotlight_cache_cleanup,
            paths=_target_paths(spotlight_targets),
        ),
    ]


def default_registry() -> ActionRegistry:
    return ActionRegistry(default_actions())
