"""Thresholds and per-user locations.

Values come from the built-in defaults, then the JSON config file, then
``MAC_TUNEUP_*`` environment variables. Anything out of range is ignored.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

ENV_PREFIX = "MAC_TUNEUP_"

# name -> (minimum, maximum)
LIMITS: Dict[str, Tuple[int, int]] = {
    "mail_downloads_min_kb": (1, 100 * 1024 * 1024),
    "log_age_days": (1, 365),
    "mail_age_days": (1, 365),
    "saved_state_age_days": (1, 365),
    "probe_timeout": (1, 600),
}


@dataclass(frozen=True)
class Settings:
    mail_downloads_min_kb: int = 5120
    log_age_days: int = 7
    mail_age_days: int = 30
    saved_state_age_days: int = 7
    probe_timeout: int = 30

    @property
    def mail_downloads_min_bytes(self) -> int:
        return self.mail_downloads_min_kb * 1024


def config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(str(Path.home()), ".config")
    return Path(base) / "mac-tuneup"


def cache_dir() -> Path:
    base = os.environ.get("XDG_CACHE_HOME") or os.path.join(str(Path.home()), ".cache")
    return Path(base) / "mac-tuneup"


def config_path() -> Path:
    return config_dir() / "config.json"


def load_settings(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings from defaults, the config file and the environment."""
    settings = Settings()
    settings = replace(settings, **_validated(_read_file(path or config_path()), source="config file"))
    env = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for field in fields(Settings):
        raw = env.get(ENV_PREFIX + field.name.upper())
        if raw is not None:
            overrides[field.name] = raw
    return replace(settings, **_validated(overrides, source="environment"))


def init_config(path: Optional[Path] = None) -> Path:
    """Write the default settings to disk. Returns the path used."""
    target = path or config_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(asdict(Settings()), indent=2) + "\n", encoding="utf-8")
    return target


def _read_file(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("Ignoring config %s: expected a JSON object", path)
        return {}
    return raw


def _validated(values: Mapping[str, Any], source: str) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for name, value in values.items():
        if name not in LIMITS:
            logger.debug("Unknown setting %r in %s", name, source)
            continue
        if isinstance(value, bool):
            logger.warning("Ignoring %s from %s: not a number", name, source)
            continue
        try:
            number = int(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring %s=%r from %s: not a number", name, value, source)
            continue
        low, high = LIMITS[name]
        if not low <= number <= high:
            logger.warning("Ignoring %s=%d from %s: outside %d..%d", name, number, source, low, high)
            continue
        out[name] = number
    return out
