"""calendaralarm.core.config

Configuration for the alarm scheduling core.

- YAML (PyYAML) or JSON config files, chosen by file suffix.
- Environment overrides through CALENDARALARM_* variables.
- Exposes a typed dataclass `AlarmConfig` and a `load_config()` helper that
  accepts an optional path override.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD_DAYS = 365
DEFAULT_MAX_OCCURRENCES = 1000
DEFAULT_ALLOWED_ACTIONS = ("EMAIL",)

# Accepted ranges for the numeric settings
MIN_LOOKAHEAD_DAYS = 1
MAX_LOOKAHEAD_DAYS = 3660
MIN_OCCURRENCES = 1
MAX_OCCURRENCES = 100_000

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class AlarmConfig:
    """Typed configuration for calendaralarm.

    Fields:
        lookahead_days: horizon for unbounded recurring series (1..3660)
        max_occurrences: cap on generated slots per series (1..100000)
        allowed_actions: VALARM ACTION values that produce alarms
        recipient_whitelist: explicit recipient addresses (empty = no whitelist)
        allowed_domains: recipient mail domains (empty = no domain restriction)
        default_timezone: zone used for floating times and DATE values
        store_path: JSON alarm store location (None = in-memory store)
        log_level: logging level name
    """

    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES
    allowed_actions: tuple[str, ...] = DEFAULT_ALLOWED_ACTIONS
    recipient_whitelist: tuple[str, ...] = field(default_factory=tuple)
    allowed_domains: tuple[str, ...] = field(default_factory=tuple)
    default_timezone: str = "UTC"
    store_path: str | None = None
    log_level: str = "INFO"

    @property
    def tzinfo(self) -> ZoneInfo:
        """Resolved default timezone."""
        return ZoneInfo(self.default_timezone)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> AlarmConfig:
        """Create AlarmConfig from a plain mapping, applying defaults and validation.

        Numeric-like values are coerced to int and clamped to their bounds,
        list-like values are normalized to tuples of stripped strings, and
        unknown timezones or log levels fall back to their defaults. Every
        coercion is logged as a warning.
        """
        if data is None:
            data = {}

        def _coerce_int(key: str, default: int, low: int, high: int) -> int:
            raw = data.get(key, default)
            try:
                value = int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default
            if value < low:
                logger.warning("%s %d below minimum; coercing to %d", key, value, low)
                return low
            if value > high:
                logger.warning("%s %d above maximum; coercing to %d", key, value, high)
                return high
            return value

        def _coerce_list(key: str, default: tuple[str, ...], *, lower: bool) -> tuple[str, ...]:
            raw = data.get(key)
            if raw is None:
                return default
            if isinstance(raw, str):
                items = raw.split(",")
            elif isinstance(raw, (list, tuple, set, frozenset)):
                items = [str(part) for part in raw]
            else:
                logger.warning("Config `%s` is not a list; coercing to single-item list", key)
                items = [str(raw)]
            cleaned = [item.strip() for item in items if item and item.strip()]
            if lower:
                cleaned = [item.lower() for item in cleaned]
            return tuple(dict.fromkeys(cleaned))

        lookahead = _coerce_int(
            "lookahead_days", DEFAULT_LOOKAHEAD_DAYS, MIN_LOOKAHEAD_DAYS, MAX_LOOKAHEAD_DAYS
        )
        max_occurrences = _coerce_int(
            "max_occurrences", DEFAULT_MAX_OCCURRENCES, MIN_OCCURRENCES, MAX_OCCURRENCES
        )

        actions = tuple(
            a.upper() for a in _coerce_list("allowed_actions", DEFAULT_ALLOWED_ACTIONS, lower=False)
        )
        if not actions:
            logger.warning("Config `allowed_actions` is empty; using defaults %s", DEFAULT_ALLOWED_ACTIONS)
            actions = DEFAULT_ALLOWED_ACTIONS

        whitelist = tuple(
            a.removeprefix("mailto:") for a in _coerce_list("recipient_whitelist", (), lower=True)
        )
        domains = tuple(d.lstrip("@") for d in _coerce_list("allowed_domains", (), lower=True))

        tz_name = str(data.get("default_timezone") or "UTC")
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown default_timezone %r; using UTC", tz_name)
            tz_name = "UTC"

        store_path = data.get("store_path")
        store_path = str(store_path) if store_path else None

        log_level = str(data.get("log_level") or "INFO").upper()
        if log_level not in _VALID_LOG_LEVELS:
            logger.warning("Unknown log_level %r; using INFO", log_level)
            log_level = "INFO"

        return cls(
            lookahead_days=lookahead,
            max_occurrences=max_occurrences,
            allowed_actions=actions,
            recipient_whitelist=whitelist,
            allowed_domains=domains,
            default_timezone=tz_name,
            store_path=store_path,
            log_level=log_level,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "lookahead_days": self.lookahead_days,
            "max_occurrences": self.max_occurrences,
            "allowed_actions": list(self.allowed_actions),
            "recipient_whitelist": list(self.recipient_whitelist),
            "allowed_domains": list(self.allowed_domains),
            "default_timezone": self.default_timezone,
            "store_path": self.store_path,
            "log_level": self.log_level,
        }


# Environment variable -> config key
ENV_OVERRIDES: dict[str, str] = {
    "CALENDARALARM_LOOKAHEAD_DAYS": "lookahead_days",
    "CALENDARALARM_MAX_OCCURRENCES": "max_occurrences",
    "CALENDARALARM_ALLOWED_ACTIONS": "allowed_actions",
    "CALENDARALARM_RECIPIENT_WHITELIST": "recipient_whitelist",
    "CALENDARALARM_ALLOWED_DOMAINS": "allowed_domains",
    "CALENDARALARM_DEFAULT_TIMEZONE": "default_timezone",
    "CALENDARALARM_STORE_PATH": "store_path",
    "CALENDARALARM_LOG_LEVEL": "log_level",
}


def apply_env_overrides(
    config: AlarmConfig, environ: Mapping[str, str] | None = None
) -> AlarmConfig:
    """Return a copy of config with CALENDARALARM_* environment values applied.

    List-valued variables are comma separated. Values go through the same
    coercion as file values, so an invalid override falls back with a warning.
    """
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for env_key, config_key in ENV_OVERRIDES.items():
        raw = env.get(env_key)
        if raw is not None and raw != "":
            overrides[config_key] = raw

    if not overrides:
        return config

    logger.debug("Applying environment overrides for keys: %s", ", ".join(sorted(overrides)))
    merged = {**config.to_dict(), **overrides}
    coerced = AlarmConfig.from_dict(merged)
    return replace(config, **{key: getattr(coerced, key) for key in overrides})


def _load_yaml_or_json(path: Path) -> Any:
    """Load a mapping from a YAML or JSON file.

    `.json` files are parsed with the json module; everything else goes
    through yaml.safe_load, which also accepts JSON documents. The yaml import
    is deferred so that importing this module stays cheap.
    """
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)

    import yaml  # noqa: PLC0415

    loaded = yaml.safe_load(text)
    # safe_load returns None for empty files
    if loaded is None:
        return {}
    return loaded


def load_config(path: str | os.PathLike[str] | None = None, *, use_env: bool = True) -> AlarmConfig:
    """Load configuration from a YAML/JSON file and return an AlarmConfig.

    Args:
        path: Optional path to the config file. Defaults to
              ./calendaralarm.yaml in the current working directory.
        use_env: Apply CALENDARALARM_* environment overrides on top of the file.

    Returns:
        AlarmConfig with values from file (or defaults).

    Behavior:
    - If file is missing: returns defaults (plus environment overrides).
    - If file exists but top-level is not a mapping: raises ValueError.
    """
    p = Path(path) if path else Path.cwd() / "calendaralarm.yaml"
    logger.debug("Attempting to load config from %s", p)
    if not p.exists():
        logger.info("Config file %s not found; using defaults", p)
        cfg = AlarmConfig()
    else:
        raw = _load_yaml_or_json(p)
        if not isinstance(raw, dict):
            logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, raw)
            raise ValueError("Config file must contain a mapping at top level")  # noqa: TRY004
        cfg = AlarmConfig.from_dict(raw)
        logger.info("Loaded configuration from %s", p)

    if use_env:
        cfg = apply_env_overrides(cfg)
    logger.debug("Configuration values: %s", cfg)
    return cfg
