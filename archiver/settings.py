from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import IntEnum

import orjson

from archiver.utils.settings import (
    ensure_float,
    ensure_int,
    ensure_str,
    load_config_file,
    load_env,
    map_keys_to_canonical,
    mask_url,
    parse_env_value,
)

logger = logging.getLogger(__name__)

# Variable names used by existing deployments of the download worker.
LEGACY_ENV: dict[str, str] = {
    "ShareLocation": "DESTINATION_ROOT",
    "MaxConcurrentThreads": "MAX_THREADS",
    "PluginsLocation": "PLUGIN_DIRECTORY",
    "NotificationUrl": "NOTIFICATION_URL",
    "MonitorUrl": "RELAY_URL",
    "Kavita__BaseUrl": "KAVITA_URL",
    "Kavita__ApiKey": "KAVITA_API_KEY",
    "Kavita__PluginName": "KAVITA_PLUGIN_NAME",
    "Kavita__LibraryId": "KAVITA_LIBRARY_ID",
    "Kavita__ForceLibraryScan": "KAVITA_FORCE_SCAN",
}

STORE_BACKENDS = ("memory", "sqlite")


class ConfigurationError(RuntimeError):
    """A required setting is missing or unusable; fatal at startup."""


class Priority(IntEnum):
    DEFAULT = 0  # builtin defaults
    CONFIG_FILE = 10  # Settings.load(config_file=...)
    ENV = 20  # ARCHIVER_* and legacy variables
    CLI = 40  # --log-level, -s KEY=VALUE
    EXPLICIT = 100  # programmatic overrides


@dataclass(frozen=True)
class Settings:
    """Immutable runtime settings for the archiver worker.

    Canonical field names are UPPERCASE. Use Settings.load() to create from file/env/CLI.
    """

    # Worker
    DESTINATION_ROOT: str | None = None
    MAX_THREADS: int = 10
    POLL_INTERVAL: float = 10.0

    # Handlers: built-in dotted paths, then plugins found in PLUGIN_DIRECTORY
    HANDLERS: list[str] = field(default_factory=list)
    PLUGIN_DIRECTORY: str = "./Plugins"

    # Relay to the external observer
    RELAY_URL: str | None = None
    RELAY_MAX_RETRIES: int = 3
    RELAY_RETRY_DELAY: float = 2.0
    RELAY_CIRCUIT_TIMEOUT: float = 60.0
    RELAY_BUFFER_SIZE: int = 1000
    RELAY_DRAIN_INTERVAL: float = 5.0
    RELAY_TIMEOUT: float = 30.0

    # Push notifications
    NOTIFICATION_URL: str | None = None
    NOTIFICATION_TIMEOUT: float = 10.0

    # Kavita library rescans; disabled unless URL, API key and library id are set
    KAVITA_URL: str | None = None
    KAVITA_API_KEY: str | None = None
    KAVITA_PLUGIN_NAME: str = "Downloader"
    KAVITA_LIBRARY_ID: str | None = None
    KAVITA_FORCE_SCAN: bool = False
    KAVITA_SCAN_DELAY: float = 15.0
    KAVITA_TIMEOUT: float = 30.0
    KAVITA_SCAN_ON_COMPLETE: bool = True

    # Queue store
    STORE_BACKEND: str = "sqlite"
    STORE_PATH: str = "archiver.db"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = None
    LOG_FORMAT: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    LOG_DATEFORMAT: str | None = None

    def __post_init__(self) -> None:
        """Validation only - no loading, no mutations."""
        ensure_str(self.DESTINATION_ROOT, "DESTINATION_ROOT", allow_none=True)

        for name in ("MAX_THREADS", "RELAY_MAX_RETRIES", "RELAY_BUFFER_SIZE"):
            value = ensure_int(getattr(self, name), name)
            if value is None or value < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)!r}")

        for name in (
            "RELAY_CIRCUIT_TIMEOUT",
            "RELAY_DRAIN_INTERVAL",
            "RELAY_TIMEOUT",
            "NOTIFICATION_TIMEOUT",
            "KAVITA_TIMEOUT",
        ):
            value = ensure_float(getattr(self, name), name)
            if value is None or value <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)!r}")

        # zero is allowed for the delays (tests and tight loops)
        for name in ("POLL_INTERVAL", "RELAY_RETRY_DELAY", "KAVITA_SCAN_DELAY"):
            value = ensure_float(getattr(self, name), name)
            if value is None or value < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)!r}")

        if not isinstance(self.HANDLERS, list):
            raise TypeError("HANDLERS must be a list of dotted paths")
        for entry in self.HANDLERS:
            if not isinstance(entry, str):
                raise TypeError(f"HANDLERS entries must be dotted path strings, got {entry!r}")

        ensure_str(self.PLUGIN_DIRECTORY, "PLUGIN_DIRECTORY")
        ensure_str(self.RELAY_URL, "RELAY_URL", allow_none=True)
        ensure_str(self.NOTIFICATION_URL, "NOTIFICATION_URL", allow_none=True)
        for name in ("KAVITA_URL", "KAVITA_API_KEY", "KAVITA_LIBRARY_ID"):
            ensure_str(getattr(self, name), name, allow_none=True)
        ensure_str(self.KAVITA_PLUGIN_NAME, "KAVITA_PLUGIN_NAME")
        for name in ("KAVITA_FORCE_SCAN", "KAVITA_SCAN_ON_COMPLETE"):
            if not isinstance(getattr(self, name), bool):
                raise TypeError(f"{name} must be a bool, got {getattr(self, name)!r}")

        if self.STORE_BACKEND not in STORE_BACKENDS:
            raise ValueError(
                f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, got {self.STORE_BACKEND!r}"
            )
        ensure_str(self.STORE_PATH, "STORE_PATH")

    @classmethod
    def load(cls, config_file: str | None = None, **overrides) -> Settings:
        """Load settings by applying layers onto a validated default Settings instance.

        Layers (low -> high):
          - builtin defaults (cls())
          - config file (Priority.CONFIG_FILE)
          - environment, ARCHIVER_* and legacy names (Priority.ENV)
          - explicit overrides passed to this function (Priority.CLI)

        Invalid values raise instead of being ignored; a worker must not start
        against a half-applied configuration.
        """
        base = cls()

        if config_file:
            base = base.with_overrides(load_config_file(config_file), priority=Priority.CONFIG_FILE)

        env_conf = load_env(aliases=LEGACY_ENV)
        if env_conf:
            base = base.with_overrides(env_conf, priority=Priority.ENV)

        explicit = {k: v for k, v in overrides.items() if v is not None}
        if explicit:
            base = base.with_overrides(explicit, priority=Priority.CLI)

        return base

    def with_overrides(
        self, overrides: dict[str, object] | None, *, priority: Priority | None = None
    ) -> Settings:
        """Return a new Settings instance with values from `overrides` applied.

        - Does not mutate `self`.
        - Unknown keys are ignored with a warning.
        - Keys are matched case-insensitively to the canonical UPPERCASE names.
        - The constructor re-runs validation in __post_init__.
        """
        if not overrides:
            return self

        base = asdict(self)
        mapped = map_keys_to_canonical(overrides, base.keys())

        for k, v in mapped.items():
            if k not in base:
                logger.warning("Ignoring unknown setting %r (source=%s)", k, priority)
                continue
            base[k] = _coerce(k, v)

        return type(self)(**base)

    def require_destination_root(self) -> str:
        if not self.DESTINATION_ROOT:
            raise ConfigurationError(
                "Destination root is not configured "
                "(set ARCHIVER_DESTINATION_ROOT or ShareLocation)"
            )
        return self.DESTINATION_ROOT

    def to_dict(self) -> dict[str, object]:
        """Serializable snapshot using canonical UPPERCASE keys, endpoint secrets masked."""
        data = asdict(self)
        data["RELAY_URL"] = mask_url(self.RELAY_URL)
        data["NOTIFICATION_URL"] = mask_url(self.NOTIFICATION_URL)
        data["KAVITA_URL"] = mask_url(self.KAVITA_URL)
        if self.KAVITA_API_KEY:
            data["KAVITA_API_KEY"] = "*****"
        return data

    def to_json(self) -> bytes:
        return bytes(orjson.dumps(self.to_dict(), option=orjson.OPT_INDENT_2))


_INT_FIELDS = frozenset({"MAX_THREADS", "RELAY_MAX_RETRIES", "RELAY_BUFFER_SIZE"})
_STR_FIELDS = frozenset(
    {
        "DESTINATION_ROOT",
        "PLUGIN_DIRECTORY",
        "RELAY_URL",
        "NOTIFICATION_URL",
        "STORE_BACKEND",
        "STORE_PATH",
        "LOG_LEVEL",
        "LOG_FILE",
        "KAVITA_URL",
        "KAVITA_API_KEY",
        "KAVITA_PLUGIN_NAME",
        "KAVITA_LIBRARY_ID",
    }
)


def _coerce(key: str, value: object) -> object:
    """Normalize an override value to the field's type.

    Environment and `-s` values arrive as raw strings. String fields keep them as
    written, so a share named `007` or `1e3` survives; other fields are parsed like
    an environment value (JSON for `{`/`[`, literals otherwise). Typed values from
    a config file may still need an int or str nudge.
    """
    if value is None:
        return None
    if isinstance(value, str):
        if key in _STR_FIELDS:
            return value.strip()
        if key == "HANDLERS" and not value.lstrip().startswith("["):
            return [p.strip() for p in value.split(",") if p.strip()]
        value = parse_env_value(value)
    if key in _STR_FIELDS and isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if key in _INT_FIELDS:
        return ensure_int(value, key)
    return value
