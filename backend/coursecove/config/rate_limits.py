"""
Rate limit profile loader.

Loads per-action-class limits from config/rate_limits.yml. Missing file
or missing classes fall back to the built-in defaults.

Usage:
    from coursecove.config.rate_limits import get_rate_limit_profiles

    profiles = get_rate_limit_profiles()
    profiles.get("CREATE")  # RateLimitConfig(limit=10, window_seconds=60)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

from coursecove.config.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed window quota: at most `limit` calls per `window_seconds` window."""
    limit: int
    window_seconds: int


DEFAULT_PROFILES: Dict[str, RateLimitConfig] = {
    "MUTATION": RateLimitConfig(limit=30, window_seconds=60),
    "CREATE": RateLimitConfig(limit=10, window_seconds=60),
    "DELETE": RateLimitConfig(limit=20, window_seconds=60),
    "BULK": RateLimitConfig(limit=5, window_seconds=60),
}


class RateLimitProfiles:
    """
    Thread-safe singleton loader for config/rate_limits.yml.

    Expected YAML shape:

        profiles:
          MUTATION: {limit: 30, window_seconds: 60}
          CREATE: {limit: 10, window_seconds: 60}
    """

    _instance: Optional["RateLimitProfiles"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._profiles: Dict[str, RateLimitConfig] = dict(DEFAULT_PROFILES)
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "rate_limits.yml",
            Path(os.getcwd()) / "config" / "rate_limits.yml",
            Path(os.getcwd()) / ".." / "config" / "rate_limits.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"rate_limits.yml not found in: {[str(p) for p in candidates]}"
        )

    def _parse(self, raw: Dict[str, Any]) -> Dict[str, RateLimitConfig]:
        profiles = dict(DEFAULT_PROFILES)
        for name, entry in (raw.get("profiles") or {}).items():
            limit = int(entry["limit"])
            window = int(entry.get("window_seconds", 60))
            if limit <= 0 or window <= 0:
                raise ValueError(f"Rate limit profile {name} must have positive limit and window")
            profiles[name.upper()] = RateLimitConfig(limit=limit, window_seconds=window)
        return profiles

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading rate limit profiles from %s", path)

                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}

                self._profiles = self._parse(raw)
                logger.info(
                    "Loaded rate limit profiles: %s",
                    sorted(self._profiles.keys()),
                )
            except FileNotFoundError:
                logger.warning("rate_limits.yml not found, using built-in defaults")
                self._profiles = dict(DEFAULT_PROFILES)

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def get(self, action_class: str) -> RateLimitConfig:
        """Return the profile for an action class; unknown classes get MUTATION."""
        return self._profiles.get(action_class.upper(), self._profiles["MUTATION"])

    def as_dict(self) -> Dict[str, RateLimitConfig]:
        return dict(self._profiles)

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None


def get_rate_limit_profiles() -> RateLimitProfiles:
    """Profiles loaded from RATE_LIMITS_CONFIG, or config/rate_limits.yml when unset."""
    return RateLimitProfiles(get_settings().rate_limits_path)
