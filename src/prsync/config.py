from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml  # type: ignore[import-untyped]

from .domain.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAMES: tuple[str, ...] = ("prsync.yml", "prsync.yaml")
SECTIONS: tuple[str, ...] = ("github", "database", "sync", "logging")

# env var -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GITHUB_TOKEN": ("github", "token"),
    "GITHUB_ORG": ("github", "organization"),
    "GITHUB_API_URL": ("github", "api_url"),
    "PRSYNC_DB": ("database", "path"),
    "PRSYNC_LOG_LEVEL": ("logging", "level"),
}


@dataclass
class GitHubConfig:
    token: str | None = None
    organization: str | None = None
    api_url: str = "https://api.github.com"
    timeout_s: float = 20.0
    max_connections: int = 16
    per_page: int = 100
    throttle_below: int = 10


@dataclass
class DatabaseConfig:
    path: str = "./data/prsync.db"


@dataclass
class SyncConfig:
    concurrency: int = 4
    rate_limit_attempts: int = 5
    transient_attempts: int = 3
    backoff_s: float = 1.0
    max_backoff_s: float = 60.0
    max_gap_days: int | None = None


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class Settings:
    github: GitHubConfig = field(default_factory=GitHubConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source: str | None = None


def find_config_file(cwd: Path | None = None) -> str | None:
    """Return the first discoverable configuration file in ``cwd``."""
    base = Path.cwd() if cwd is None else cwd
    for name in CONFIG_FILE_NAMES:
        candidate = base / name
        if candidate.is_file():
            return str(candidate)
    return None


def _read_config_mapping(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"failed to parse configuration file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"unable to open configuration file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"configuration file {path} must contain a mapping")
    return data


def _coerce(section: str, key: str, value: Any, default: Any) -> Any:
    if value is None:
        if default is None:
            return None
        raise ConfigurationError("a value is required", key=f"{section}.{key}")
    target = type(default) if default is not None else (int if key == "max_gap_days" else str)
    try:
        if target is bool:
            return value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes")
        if target in (int, float) and isinstance(value, bool):
            raise ValueError("booleans are not numbers")
        return target(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"expected {target.__name__}, got {value!r}", key=f"{section}.{key}") from e


def _build(section: str, cls: type, data: Mapping[str, Any]) -> Any:
    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigurationError(f"unknown key(s) {sorted(unknown)}", key=section)
    defaults = cls()
    return cls(**{k: _coerce(section, k, v, getattr(defaults, k)) for k, v in data.items()})


def _validate(s: Settings) -> None:
    checks = (
        ("sync.concurrency", s.sync.concurrency >= 1),
        ("sync.rate_limit_attempts", s.sync.rate_limit_attempts >= 1),
        ("sync.transient_attempts", s.sync.transient_attempts >= 1),
        ("sync.backoff_s", s.sync.backoff_s >= 0),
        ("sync.max_backoff_s", s.sync.max_backoff_s >= s.sync.backoff_s),
        ("sync.max_gap_days", s.sync.max_gap_days is None or s.sync.max_gap_days >= 1),
        ("github.per_page", 1 <= s.github.per_page <= 100),
        ("github.timeout_s", s.github.timeout_s > 0),
        ("github.max_connections", s.github.max_connections >= 1),
        ("github.throttle_below", s.github.throttle_below >= 0),
        ("logging.level", s.logging.level.upper() in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")),
    )
    for key, ok in checks:
        if not ok:
            raise ConfigurationError("value out of range", key=key)


def load_settings(path: str | None = None, env: Mapping[str, str] | None = None) -> Settings:
    """File (explicit or discovered) < environment. CLI options are applied by the caller."""
    env = os.environ if env is None else env
    path = path or find_config_file()
    data: dict[str, Any] = _read_config_mapping(path) if path else {}

    unknown = set(data) - set(SECTIONS)
    if unknown:
        raise ConfigurationError(f"unknown section(s) {sorted(unknown)}")
    sections: dict[str, dict[str, Any]] = {}
    for name in SECTIONS:
        raw = data.get(name) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError("section must be a mapping", key=name)
        sections[name] = dict(raw)

    for var, (section, key) in ENV_OVERRIDES.items():
        if env.get(var):
            sections[section][key] = env[var]

    settings = Settings(
        github=_build("github", GitHubConfig, sections["github"]),
        database=_build("database", DatabaseConfig, sections["database"]),
        sync=_build("sync", SyncConfig, sections["sync"]),
        logging=_build("logging", LoggingConfig, sections["logging"]),
        source=path,
    )
    settings.logging.level = settings.logging.level.upper()
    _validate(settings)
    if path:
        logger.debug("loaded configuration from %s", path)
    return settings
