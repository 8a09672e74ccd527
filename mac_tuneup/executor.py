"""Run registered actions with whitelisting, thresholds, timeouts and isolation."""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .actions import Action, ActionContext, ActionRegistry, StepOutcome, default_registry
from .commands import Deadline, PrivilegeSession, Runner, run_command
from .config import Settings
from .errors import ActionTimeout
from .formatting import format_size
from .system_state import total_size
from .whitelist import WhitelistStore

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED_WHITELISTED = "skipped-whitelisted"
    SKIPPED_THRESHOLD = "skipped-threshold"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExecutionResult:
    action_key: str
    status: ExecutionStatus
    message: str
    bytes_freed: Optional[int] = None
    steps: Tuple[StepOutcome, ...] = ()


@dataclass
class RunReport:
    results: List[ExecutionResult] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False

    def counts(self) -> Dict[ExecutionStatus, int]:
        return dict(Counter(result.status for result in self.results))

    @property
    def bytes_freed(self) -> int:
        return sum(result.bytes_freed or 0 for result in self.results)

    @property
    def exit_code(self) -> int:
        return 1 if self.cancelled else 0


class SafeExecutor:
    """Executes actions one at a time; a failing action never stops the batch."""

    def __init__(
        self,
        registry: Optional[ActionRegistry] = None,
        whitelist: Optional[WhitelistStore] = None,
        settings: Optional[Settings] = None,
        privileges: Optional[PrivilegeSession] = None,
        runner: Runner = run_command,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry or default_registry()
        self.whitelist = whitelist if whitelist is not None else WhitelistStore()
        self.settings = settings or Settings()
        self.privileges = privileges or PrivilegeSession(runner)
        self._runner = runner
        self._clock = clock

    def execute(self, key: str, dry_run: bool = False) -> ExecutionResult:
        """Run one action and describe what happened.

        Raises ``UnknownActionError`` for a key the registry does not know;
        every other problem is folded into the returned result.
        """
        action = self.registry.get(key)
        if self.whitelist.is_whitelisted(key):
            logger.info("Skipping %s: whitelisted", key)
            return ExecutionResult(key, ExecutionStatus.SKIPPED_WHITELISTED, f"{action.title} is whitelisted")

        skipped = self._below_threshold(action)
        if skipped is not None:
            return skipped

        before = None if dry_run else self._affected_size(action)
        ctx = ActionContext(
            self.settings,
            Deadline(action.timeout, self._clock),
            dry_run=dry_run,
            privileges=self.privileges,
            runner=self._runner,
        )
        logger.info("%s %s", "Previewing" if dry_run else "Running", action.title)
        try:
            action.procedure(ctx)
            # removals are not interruptible; an overrun is still reported
            ctx.deadline.check()
        except ActionTimeout as exc:
            logger.warning("%s timed out: %s", key, exc)
            return ExecutionResult(key, ExecutionStatus.TIMED_OUT, f"{action.title} {exc}", steps=tuple(ctx.steps))
        except Exception as exc:
            logger.error("%s failed unexpectedly: %s", key, exc)
            logger.debug("Traceback for %s", key, exc_info=True)
            return ExecutionResult(key, ExecutionStatus.FAILED, f"{action.title}: {exc}", steps=tuple(ctx.steps))

        freed = None
        if before is not None:
            after = self._affected_size(action)
            freed = max(0, before - after) if after is not None else None
        return _summarise(action, ctx, freed)

    def execute_batch(self, keys: Sequence[str], dry_run: bool = False) -> RunReport:
        """Run ``keys`` in order. Unknown keys are rejected before anything runs."""
        for key in keys:
            self.registry.get(key)
        report = RunReport(dry_run=dry_run)
        for key in keys:
            report.results.append(self.execute(key, dry_run=dry_run))
        return report

    def cancelled(self, keys: Sequence[str], dry_run: bool = False) -> RunReport:
        results = [
            ExecutionResult(key, ExecutionStatus.CANCELLED, "Cancelled before start") for key in keys
        ]
        return RunReport(results=results, dry_run=dry_run, cancelled=True)

    def _below_threshold(self, action: Action) -> Optional[ExecutionResult]:
        threshold = action.threshold
        if threshold is None:
            return None
        minimum = threshold.minimum(self.settings)
        try:
            measured = threshold.measure(self.settings)
        except Exception as exc:
            logger.debug("Measuring %s failed: %s", threshold.label, exc)
            measured = 0
        if measured >= minimum:
            return None
        logger.info("Skipping %s: %d bytes below minimum %d", action.key, measured, minimum)
        return ExecutionResult(
            action.key,
            ExecutionStatus.SKIPPED_THRESHOLD,
            f"Only {format_size(measured)} of {threshold.label} detected "
            f"(minimum {format_size(minimum)}), skipping cleanup",
        )

    def _affected_size(self, action: Action) -> Optional[int]:
        try:
            paths = action.paths()
        except Exception as exc:
            logger.debug("Resolving paths for %s failed: %s", action.key, exc)
            return None
        if not paths:
            return None
        return total_size(paths, timeout=self.settings.probe_timeout)


def _summarise(action: Action, ctx: ActionContext, freed: Optional[int]) -> ExecutionResult:
    steps = tuple(ctx.steps)
    broken = [step for step in steps if step.required and not step.ok]
    if broken:
        first = broken[0]
        names = ", ".join(step.name for step in broken)
        detail = f" ({first.detail})" if first.detail else ""
        return ExecutionResult(
            action.key, ExecutionStatus.FAILED, f"{action.title}: {names} failed{detail}", freed, steps
        )

    message = ctx.notes[-1] if ctx.notes else f"{action.title} completed"
    if ctx.dry_run:
        message = f"dry-run: {message}"
    optional_failures = sum(1 for step in steps if not step.ok)
    if optional_failures:
        message += f" ({optional_failures} optional step(s) failed)"
    return ExecutionResult(action.key, ExecutionStatus.SUCCEEDED, message, freed, steps)
