"""Config loading for crmguard.

Reads `.crmguard/config.yaml` (or `~/.crmguard/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field, or values that
would disable a security control (zero thresholds, negative windows).
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. CRMGUARD_CONFIG environment variable (if set)
  3. `.crmguard/config.yaml` (working directory — for development)
  4. `~/.crmguard/config.yaml` (home directory — for production deployments)

Environment variable overrides:
  CRMGUARD_PORT — overrides server.port
  RESEND_API_KEY, ADMIN_NOTIFICATION_EMAIL — alert channel secrets (never in YAML)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml
from limits import parse_many

from crmguard import constants as c
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".crmguard/config.yaml",
    os.path.expanduser("~/.crmguard/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 4343


@dataclass
class SecurityConfig:
    """Violation ledger and signal detector tuning."""

    max_violations: int = c.MAX_VIOLATIONS_BEFORE_LOGOUT
    violation_reset_minutes: float = c.VIOLATION_RESET_MINUTES
    sign_out_delay_seconds: float = c.SIGN_OUT_DELAY_SECONDS
    focus_grace_ms: int = c.FOCUS_GRACE_MS
    screenshot_debounce_ms: int = c.SCREENSHOT_DEBOUNCE_MS
    devtools_threshold_px: int = c.DEVTOOLS_THRESHOLD_PX
    devtools_poll_seconds: float = c.DEVTOOLS_POLL_SECONDS

    @property
    def violation_reset_seconds(self) -> float:
        return self.violation_reset_minutes * 60


@dataclass
class RevealConfig:
    """Disclosure gateway configuration."""

    max_reveals: int = c.MAX_REVEALS_PER_WINDOW
    window_seconds: int = c.REVEAL_WINDOW_SECONDS
    auto_hide_seconds: int = c.AUTO_HIDE_SECONDS
    storage_uri: str = "async+memory://"  # limits storage; async+redis://... for multi-process
    http_rate_limit: str = c.REVEAL_HTTP_RATE_LIMIT


@dataclass
class MonitoringConfig:
    """Suspicious-activity aggregator configuration."""

    window_minutes: float = c.SUSPICIOUS_WINDOW_MINUTES
    threshold: int = c.SUSPICIOUS_THRESHOLD
    poll_interval_seconds: float = c.AGGREGATOR_POLL_SECONDS
    fetch_limit: int = c.AGGREGATOR_FETCH_LIMIT
    alert_max_attempts: int = c.ALERT_MAX_ATTEMPTS
    alert_backoff_seconds: float = c.ALERT_BACKOFF_SECONDS


@dataclass
class AlertConfig:
    """Outbound alert channel. Secrets are read from the environment only."""

    from_address: str = "CRM Security <onboarding@resend.dev>"
    subject_prefix: str = "ALERT: Suspicious Activity Detected"
    api_key: Optional[str] = field(default=None, repr=False)
    admin_email: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.admin_email)


@dataclass
class AuditConfig:
    """Local audit backend configuration (ignored when Supabase is selected)."""

    path: str = "~/.crmguard/audit.db"


@dataclass
class Config:
    """Root configuration object populated from .crmguard/config.yaml.

    All fields have safe defaults — crmguard can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    reveal: RevealConfig = field(default_factory=RevealConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    fixtures_path: Optional[str] = None  # identities + leads for the local data boundary
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a non-positive threshold, window or delay, or an
                unparseable reveal.http_rate_limit.
        """
        server_raw = raw.get("server", {}) or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 4343),
        )

        security = _build(SecurityConfig, raw.get("security"), path)
        reveal = _build(RevealConfig, raw.get("reveal"), path)
        _check_rate_limit(reveal.http_rate_limit, path)
        monitoring = _build(MonitoringConfig, raw.get("monitoring"), path)

        alerts_raw = raw.get("alerts", {}) or {}
        alerts = AlertConfig(
            from_address=alerts_raw.get("from_address", AlertConfig.from_address),
            subject_prefix=alerts_raw.get("subject_prefix", AlertConfig.subject_prefix),
        )

        audit_raw = raw.get("audit", {}) or {}
        audit = AuditConfig(path=audit_raw.get("path", AuditConfig.path))

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            security=security,
            reveal=reveal,
            monitoring=monitoring,
            alerts=alerts,
            audit=audit,
            fixtures_path=raw.get("fixtures_path"),
            path=path,
        )


# Fields that must be strictly positive; zero would silently disable a control.
_POSITIVE_FIELDS: frozenset[str] = frozenset({
    "max_violations",
    "violation_reset_minutes",
    "devtools_threshold_px",
    "devtools_poll_seconds",
    "max_reveals",
    "auto_hide_seconds",
    "window_seconds",
    "window_minutes",
    "threshold",
    "poll_interval_seconds",
    "fetch_limit",
    "alert_max_attempts",
})


def _build(cls: type, section: Any, path: Optional[str]) -> Any:
    """Overlay a YAML section onto a config dataclass and validate it."""
    section = section or {}
    if not isinstance(section, dict):
        _fail(f"CONFIG ERROR: section for {cls.__name__} in {path} must be a mapping.")
    known = {name for name in cls.__dataclass_fields__}  # type: ignore[attr-defined]
    values = {k: v for k, v in section.items() if k in known}
    instance = cls(**values)
    for name in known:
        value = getattr(instance, name)
        if name in _POSITIVE_FIELDS and (not isinstance(value, (int, float)) or value <= 0):
            _fail(
                f"CONFIG ERROR: {cls.__name__}.{name} must be a positive number, got {value!r}."
            )
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value < 0:
            _fail(f"CONFIG ERROR: {cls.__name__}.{name} must not be negative, got {value!r}.")
    return instance


def _check_rate_limit(value: Any, path: Optional[str]) -> None:
    """Refuse a reveal request cap that slowapi could not parse."""
    try:
        parse_many(str(value))
    except ValueError:
        _fail(f"CONFIG ERROR: reveal.http_rate_limit in {path} is not a rate limit string, got {value!r}.")


def _fail(msg: str) -> None:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate crmguard configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Environment overrides are applied after loading (or defaulting).

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid numeric values, or invalid ``CRMGUARD_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("CRMGUARD_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "crmguard refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )

    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: crmguard is configured to bind on 0.0.0.0 (all interfaces). "
            "Put it behind a TLS-terminating proxy before exposing it."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        max_violations=config.security.max_violations,
        suspicious_threshold=config.monitoring.threshold,
        suspicious_window_minutes=config.monitoring.window_minutes,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If CRMGUARD_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("CRMGUARD_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _fail(
                f"CONFIG ERROR: CRMGUARD_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )

    config.alerts.api_key = os.environ.get("RESEND_API_KEY") or None
    config.alerts.admin_email = os.environ.get("ADMIN_NOTIFICATION_EMAIL") or None
