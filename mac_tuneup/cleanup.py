"""Filesystem primitives used by cleanup actions."""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
import time
from typing import Optional

from .commands import Deadline

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def delete_matching(
    root: str,
    pattern: str = "*",
    age_days: int = 0,
    kind: str = "f",
    dry_run: bool = False,
    now: Optional[float] = None,
    deadline: Optional[Deadline] = None,
) -> int:
    """Remove entries under ``root`` whose name matches ``pattern``.

    ``kind`` selects files (``"f"``), directories (``"d"``) or both
    (``"any"``). Only entries at least ``age_days`` old by modification time
    are removed; ``0`` removes regardless of age. ``root`` itself is never
    removed and a missing root is not an error. Returns the number of
    entries removed, or that would be removed in dry-run mode.
    """
    if kind not in ("f", "d", "any"):
        raise ValueError(f"kind must be 'f', 'd' or 'any', not {kind!r}")
    if not os.path.isdir(root):
        return 0
    cutoff = (now if now is not None else time.time()) - age_days * SECONDS_PER_DAY
    removed = 0
    for dirpath, dirnames, filenames in os.walk(root):
        if deadline is not None:
            deadline.check()
        candidates = []
        if kind in ("d", "any"):
            candidates.extend((name, True) for name in dirnames)
        if kind in ("f", "any"):
            candidates.extend((name, False) for name in filenames)
        for name, is_dir in candidates:
            if not fnmatch.fnmatch(name, pattern):
                continue
            path = os.path.join(dirpath, name)
            if age_days > 0 and not _older_than(path, cutoff):
                continue
            if dry_run:
                logger.info("dry-run: would remove %s", path)
                removed += 1
            elif remove_path(path):
                removed += 1
            if is_dir:
                # removed or slated for removal; do not descend
                dirnames.remove(name)
    return removed


def remove_path(path: str, dry_run: bool = False) -> bool:
    """Remove a file, symlink or directory tree. Returns True if it is gone."""
    if not os.path.lexists(path):
        return False
    if dry_run:
        logger.info("dry-run: would remove %s", path)
        return True
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except OSError as exc:
        logger.debug("Could not remove %s: %s", path, exc)
        return False
    return True


def _older_than(path: str, cutoff: float) -> bool:
    try:
        return os.lstat(path).st_mtime <= cutoff
    except OSError:
        return False
