"""Run external tools under a watchdog and track tool and privilege availability."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .errors import ActionTimeout, CommandTimeout

logger = logging.getLogger(__name__)

KILL_GRACE = 2.0


@dataclass(frozen=True)
class CommandResult:
    argv: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def reason(self) -> str:
        detail = (self.stderr or self.stdout).strip().splitlines()
        tail = detail[-1] if detail else ""
        return f"exit {self.returncode}: {tail}" if tail else f"exit {self.returncode}"


Runner = Callable[..., CommandResult]


def printable(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(part) for part in argv)


def run_command(argv: Sequence[str], timeout: float = 30.0, interactive: bool = False) -> CommandResult:
    """Run ``argv`` and wait at most ``timeout`` seconds.

    Non-interactive commands run in their own process group with captured
    output; on timeout the whole group is terminated and ``CommandTimeout`` is
    raised, so nothing the command spawned outlives it. Interactive commands
    keep the terminal (needed for password prompts) and are killed alone.
    A missing executable yields return code 127 instead of an exception.
    """
    argv = list(argv)
    logger.debug("Executing: %s (timeout %.0fs)", printable(argv), timeout)
    try:
        if interactive:
            proc = subprocess.Popen(argv)
        else:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                preexec_fn=os.setpgrp,
            )
    except FileNotFoundError:
        return CommandResult(argv, 127, "", f"{argv[0]}: command not found")
    except PermissionError as exc:
        return CommandResult(argv, 126, "", str(exc))

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        if interactive:
            proc.kill()
            proc.wait()
        else:
            _kill_group(proc)
        raise CommandTimeout(argv, timeout) from None

    logger.debug("%s exited with %s", argv[0], proc.returncode)
    return CommandResult(argv, proc.returncode, stdout or "", stderr or "")


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    try:
        proc.wait(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        pass
    # stragglers that ignored SIGTERM or were orphaned by the leader
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.communicate()


@dataclass(frozen=True)
class Capability:
    tool: str
    path: Optional[str]

    @property
    def available(self) -> bool:
        return self.path is not None


def probe_capability(tool: str) -> Capability:
    path = shutil.which(tool)
    if path is None:
        logger.debug("Tool %s is not installed", tool)
    return Capability(tool, path)


class PrivilegeSession:
    """Administrator access acquired once per run.

    The first privileged command triggers ``sudo -v``; the verdict is cached
    for the rest of the process and never written anywhere. A cached grant is
    re-validated with ``sudo -n -v`` so an expired sudo timestamp prompts again.
    """

    def __init__(self, runner: Runner = run_command) -> None:
        self._runner = runner
        self._granted: Optional[bool] = None

    @property
    def is_root(self) -> bool:
        return hasattr(os, "geteuid") and os.geteuid() == 0

    @property
    def acquired(self) -> bool:
        return bool(self._granted)

    def acquire(self) -> bool:
        if self.is_root:
            return True
        if self._granted and not self._still_valid():
            logger.debug("sudo timestamp expired; asking again")
            self._granted = None
        if self._granted is None:
            if not probe_capability("sudo").available:
                self._granted = False
            else:
                try:
                    self._granted = self._runner(["sudo", "-v"], timeout=120, interactive=True).ok
                except CommandTimeout:
                    self._granted = False
            if not self._granted:
                logger.warning("Administrator privileges unavailable; privileged steps will fail")
        return self._granted

    def _still_valid(self) -> bool:
        try:
            return self._runner(["sudo", "-n", "-v"], timeout=10).ok
        except CommandTimeout:
            return False

    def wrap(self, argv: Sequence[str]) -> List[str]:
        if self.is_root:
            return list(argv)
        return ["sudo", "-n", *argv]


class Deadline:
    """Wall-clock budget shared by every step of one action."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._expires

    def check(self) -> None:
        if self.expired():
            raise ActionTimeout(f"exceeded its {self.seconds:.0f}s limit")
