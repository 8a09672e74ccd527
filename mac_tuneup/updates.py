"""Aggregate pending software updates, ask once, then apply them per source.

The flow is a small state machine::

    IDLE -> AGGREGATING -> NO_UPDATES
                        -> AWAITING_CONFIRMATION -> CANCELLED
                                                 -> ACCEPTED -> PERFORMING -> REPORTED

Counts travel between stages inside an immutable :class:`UpdateCounts`.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .commands import PrivilegeSession, Runner, probe_capability, run_command
from .config import cache_dir
from .errors import CommandTimeout, InvalidTransition

logger = logging.getLogger(__name__)

ACCEPT_KEYS = frozenset({"y", "Y", "\r", "\n"})
PROBE_TIMEOUT = 60
UPDATE_TIMEOUT = 1800
PACKAGE_NAME = "mac-tuneup"


class UpdateSource(str, Enum):
    HOMEBREW_FORMULA = "homebrew-formula"
    HOMEBREW_CASK = "homebrew-cask"
    APP_STORE = "app-store"
    MACOS_SYSTEM = "macos-system"
    SELF = "self"


FLAG_SOURCES = frozenset({UpdateSource.MACOS_SYSTEM, UpdateSource.SELF})


class UpdateState(str, Enum):
    IDLE = "idle"
    AGGREGATING = "aggregating"
    NO_UPDATES = "no-updates"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    ACCEPTED = "accepted"
    PERFORMING = "performing"
    REPORTED = "reported"
    CANCELLED = "cancelled"


TRANSITIONS: Dict[UpdateState, Tuple[UpdateState, ...]] = {
    UpdateState.IDLE: (UpdateState.AGGREGATING,),
    UpdateState.AGGREGATING: (UpdateState.NO_UPDATES, UpdateState.AWAITING_CONFIRMATION),
    UpdateState.AWAITING_CONFIRMATION: (UpdateState.ACCEPTED, UpdateState.CANCELLED),
    UpdateState.ACCEPTED: (UpdateState.PERFORMING,),
    UpdateState.PERFORMING: (UpdateState.REPORTED,),
    UpdateState.NO_UPDATES: (),
    UpdateState.REPORTED: (),
    UpdateState.CANCELLED: (),
}


@dataclass(frozen=True)
class UpdateSourceCount:
    source: UpdateSource
    count: int


@dataclass(frozen=True)
class UpdateCounts:
    formula: int = 0
    cask: int = 0
    app_store: int = 0
    macos: bool = False
    self_update: bool = False

    def sources(self) -> List[UpdateSourceCount]:
        """Per-source counts, flags counted as 1, zero entries dropped."""
        pairs = [
            UpdateSourceCount(UpdateSource.HOMEBREW_FORMULA, self.formula),
            UpdateSourceCount(UpdateSource.HOMEBREW_CASK, self.cask),
            UpdateSourceCount(UpdateSource.APP_STORE, self.app_store),
            UpdateSourceCount(UpdateSource.MACOS_SYSTEM, int(self.macos)),
            UpdateSourceCount(UpdateSource.SELF, int(self.self_update)),
        ]
        return [pair for pair in pairs if pair.count > 0]

    @property
    def total(self) -> int:
        return sum(pair.count for pair in self.sources())


@dataclass(frozen=True)
class UpdateOutcome:
    source: UpdateSource
    ok: bool
    message: str = ""


@dataclass(frozen=True)
class UpdateReport:
    state: UpdateState
    counts: UpdateCounts
    outcomes: Tuple[UpdateOutcome, ...] = ()

    @property
    def exit_code(self) -> int:
        return 0 if self.state is UpdateState.REPORTED else 1


Probe = Callable[[], int]
Updater = Callable[[], Tuple[bool, str]]


class UpdateAggregator:
    def __init__(
        self,
        probes: Optional[Mapping[UpdateSource, Probe]] = None,
        updaters: Optional[Mapping[UpdateSource, Updater]] = None,
        read_key: Optional[Callable[[], str]] = None,
        reset_self_cache: Optional[Callable[[], None]] = None,
        prompt: Optional[Callable[[UpdateCounts], None]] = None,
    ) -> None:
        self.probes = dict(probes) if probes is not None else default_probes()
        self.updaters = dict(updaters) if updaters is not None else default_updaters()
        self.read_key = read_key or read_single_key
        self.reset_self_cache = reset_self_cache or clear_self_update_cache
        self.prompt = prompt
        self.state = UpdateState.IDLE

    def _transition(self, target: UpdateState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"cannot move from {self.state.value} to {target.value}")
        logger.debug("Update state %s -> %s", self.state.value, target.value)
        self.state = target

    def aggregate(self) -> UpdateCounts:
        self._transition(UpdateState.AGGREGATING)
        values = {source: self._probe(source) for source in UpdateSource}
        counts = UpdateCounts(
            formula=values[UpdateSource.HOMEBREW_FORMULA],
            cask=values[UpdateSource.HOMEBREW_CASK],
            app_store=values[UpdateSource.APP_STORE],
            macos=values[UpdateSource.MACOS_SYSTEM] > 0,
            self_update=values[UpdateSource.SELF] > 0,
        )
        if counts.total == 0:
            self._transition(UpdateState.NO_UPDATES)
        else:
            self._transition(UpdateState.AWAITING_CONFIRMATION)
        return counts

    def _probe(self, source: UpdateSource) -> int:
        probe = self.probes.get(source)
        if probe is None:
            return 0
        try:
            value = int(probe())
        except Exception as exc:
            logger.debug("Update probe %s failed: %s", source.value, exc)
            return 0
        if source in FLAG_SOURCES:
            return 1 if value > 0 else 0
        return max(0, value)

    def await_confirmation(self, counts: UpdateCounts) -> bool:
        """One blocking key read; anything but an accept key cancels."""
        if self.prompt is not None:
            self.prompt(counts)
        try:
            key = self.read_key()
        except (EOFError, KeyboardInterrupt, OSError):
            key = ""
        if key in ACCEPT_KEYS:
            self._transition(UpdateState.ACCEPTED)
            return True
        self._transition(UpdateState.CANCELLED)
        return False

    def perform(self, counts: UpdateCounts) -> Tuple[UpdateOutcome, ...]:
        self._transition(UpdateState.PERFORMING)
        outcomes: List[UpdateOutcome] = []
        for pending in counts.sources():
            outcomes.append(self._update(pending.source))
        if counts.self_update:
            try:
                self.reset_self_cache()
            except OSError as exc:
                logger.warning("Could not reset self-update cache: %s", exc)
        self._transition(UpdateState.REPORTED)
        return tuple(outcomes)

    def _update(self, source: UpdateSource) -> UpdateOutcome:
        updater = self.updaters.get(source)
        if updater is None:
            return UpdateOutcome(source, False, "no updater available")
        logger.info("Updating %s", source.value)
        try:
            ok, message = updater()
        except Exception as exc:
            logger.warning("Updating %s failed: %s", source.value, exc)
            return UpdateOutcome(source, False, str(exc))
        if not ok:
            logger.warning("Updating %s failed: %s", source.value, message)
        return UpdateOutcome(source, ok, message)

    def run(self) -> UpdateReport:
        counts = self.aggregate()
        if self.state is UpdateState.NO_UPDATES:
            return UpdateReport(self.state, counts)
        if not self.await_confirmation(counts):
            return UpdateReport(self.state, counts)
        return UpdateReport(self.state, counts, self.perform(counts))


def read_single_key() -> str:
    """Block until one key is pressed; on a pipe, read one character."""
    if not sys.stdin.isatty():
        return sys.stdin.read(1)
    import termios
    import tty

    fd = sys.stdin.fileno()
    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        return sys.stdin.read(1)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def _count_lines(argv: List[str], runner: Runner = run_command) -> int:
    if not probe_capability(argv[0]).available:
        return 0
    try:
        result = runner(argv, timeout=PROBE_TIMEOUT)
    except CommandTimeout as exc:
        logger.debug("%s", exc)
        return 0
    if not result.ok:
        logger.debug("%s failed: %s", argv[0], result.reason())
        return 0
    return sum(1 for line in result.stdout.splitlines() if line.strip())


def count_outdated_formulae() -> int:
    return _count_lines(["brew", "outdated", "--formula", "--quiet"])


def count_outdated_casks() -> int:
    return _count_lines(["brew", "outdated", "--cask", "--quiet"])


def count_app_store_updates() -> int:
    return _count_lines(["mas", "outdated"])


def macos_update_available(runner: Runner = run_command) -> int:
    try:
        result = runner(["softwareupdate", "--list"], timeout=PROBE_TIMEOUT)
    except CommandTimeout as exc:
        logger.debug("%s", exc)
        return 0
    listing = result.stdout + result.stderr
    return int(any(line.strip().startswith("* Label:") for line in listing.splitlines()))


def self_update_message_path() -> str:
    return str(cache_dir() / "update_message")


def self_update_available() -> int:
    path = self_update_message_path()
    try:
        return int(os.path.getsize(path) > 0)
    except OSError:
        return 0


def clear_self_update_cache() -> None:
    for name in ("version_check", "update_message"):
        try:
            os.remove(str(cache_dir() / name))
        except FileNotFoundError:
            continue


def default_probes() -> Dict[UpdateSource, Probe]:
    return {
        UpdateSource.HOMEBREW_FORMULA: count_outdated_formulae,
        UpdateSource.HOMEBREW_CASK: count_outdated_casks,
        UpdateSource.APP_STORE: count_app_store_updates,
        UpdateSource.MACOS_SYSTEM: macos_update_available,
        UpdateSource.SELF: self_update_available,
    }


@dataclass
class CommandUpdater:
    argv: List[str]
    privileged: bool = False
    privileges: Optional[PrivilegeSession] = None
    runner: Runner = field(default=run_command)

    def __call__(self) -> Tuple[bool, str]:
        argv = list(self.argv)
        if self.privileged:
            session = self.privileges or PrivilegeSession(self.runner)
            if not session.acquire():
                return False, "administrator privileges unavailable"
            argv = session.wrap(argv)
        try:
            result = self.runner(argv, timeout=UPDATE_TIMEOUT)
        except CommandTimeout as exc:
            return False, str(exc)
        return (True, "updated") if result.ok else (False, result.reason())


def default_updaters(privileges: Optional[PrivilegeSession] = None) -> Dict[UpdateSource, Updater]:
    privileges = privileges or PrivilegeSession()
    return {
        UpdateSource.HOMEBREW_FORMULA: CommandUpdater(["brew", "upgrade", "--formula"]),
        UpdateSource.HOMEBREW_CASK: CommandUpdater(["brew", "upgrade", "--cask"]),
        UpdateSource.APP_STORE: CommandUpdater(["mas", "upgrade"]),
        UpdateSource.MACOS_SYSTEM: CommandUpdater(
            ["softwareupdate", "--install", "--all"], privileged=True, privileges=privileges
        ),
        UpdateSource.SELF: CommandUpdater(
            [sys.executable, "-m", "pip", "install", "--upgrade", PACKAGE_NAME]
        ),
    }
