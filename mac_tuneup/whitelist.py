"""Persisted set of action keys the user does not want executed."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Set

from .config import config_dir

logger = logging.getLogger(__name__)


def whitelist_path() -> Path:
    return config_dir() / "whitelist.json"


class WhitelistStore:
    """Key to suppressed-flag mapping backed by a small JSON file.

    The file is read once, when the store is created. Edits made to the file
    by someone else while a run is in progress are not picked up, and
    ``set_whitelisted`` overwrites them.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or whitelist_path()
        self._entries: Dict[str, bool] = self._load()

    def _load(self) -> Dict[str, bool]:
        if not self.path.is_file():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable whitelist %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring whitelist %s: expected a JSON object", self.path)
            return {}
        return {str(key): value for key, value in raw.items() if isinstance(value, bool)}

    def is_whitelisted(self, action_key: str) -> bool:
        return self._entries.get(action_key, False)

    def set_whitelisted(self, action_key: str, suppressed: bool) -> None:
        self._entries[action_key] = suppressed
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._entries, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        logger.debug("Whitelist %s: %s=%s", self.path, action_key, suppressed)

    def list_entries(self) -> Set[str]:
        return {key for key, suppressed in self._entries.items() if suppressed}
