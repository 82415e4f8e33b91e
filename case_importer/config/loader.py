from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from dotenv import load_dotenv
from jsonschema.exceptions import ValidationError

"""Config loader.

Responsibilities:
- Load YAML config/import.yml
- Validate against the bundled JSON schema (import_schema.json)
- Apply defaults (per-row time estimate, heartbeat timing, template locale, logs dir)
- Resolve the database DSN with environment variables taking precedence
"""

SCHEMA_PATH = Path(__file__).with_name("import_schema.json")

DEFAULT_CONFIG_PATH = Path("config/import.yml")
DEFAULT_SECONDS_PER_ROW = 0.5
DEFAULT_LOCALE = "en"
DEFAULT_ALLOWED_ROLES = ("admin", "lawyer")
DEFAULT_HEARTBEAT_SECONDS = 30
DEFAULT_STALE_AFTER_SECONDS = 300
DEFAULT_RESERVATION_HOLD_SECONDS = 900


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection fallback configuration.

    Environment variables take precedence over these values (see resolve_dsn).
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None

    def resolve_dsn(self, env: dict[str, str] | None = None) -> str:
        """Build a libpq DSN.

        Priority:
            1. DATABASE_URL / PGDSN (whole DSN)
            2. individual PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
            3. this config section
        """
        env = dict(os.environ) if env is None else env
        direct = env.get("DATABASE_URL") or env.get("PGDSN") or self.dsn
        if direct:
            return direct
        host = env.get("PGHOST", self.host or "localhost")
        port = env.get("PGPORT", str(self.port) if self.port else "5432")
        user = env.get("PGUSER", self.user or "postgres")
        password = env.get("PGPASSWORD", self.password or "")
        database = env.get("PGDATABASE", self.database or "postgres")
        dsn = f"host={host} port={port} user={user} dbname={database}"
        if password:
            dsn += f" password={password}"
        return dsn


@dataclass(frozen=True)
class ImportConfig:
    """Root configuration object of the import pipeline."""
    database: DatabaseConfig
    max_workers: int
    seconds_per_row: float = DEFAULT_SECONDS_PER_ROW
    default_locale: str = DEFAULT_LOCALE
    audit_enabled: bool = True
    allowed_roles: tuple[str, ...] = DEFAULT_ALLOWED_ROLES
    logs_directory: Path = field(default_factory=lambda: Path("./logs"))
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS
    reservation_hold_seconds: float = DEFAULT_RESERVATION_HOLD_SECONDS


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing or invalid, or config data violates it
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def load_env_file(path: Path = Path(".env"), override: bool = True) -> bool:
    """Load .env with python-dotenv; values override the process environment."""
    if not path.exists():
        return False
    return bool(load_dotenv(dotenv_path=path, override=override))


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> ImportConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")

    _validate_config_schema(data)

    db_raw = data.get("database") or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    importer = data.get("importer") or {}
    scheduler = data["scheduler"]
    heartbeat = scheduler.get("heartbeat_seconds", DEFAULT_HEARTBEAT_SECONDS)
    stale_after = scheduler.get("stale_after_seconds", DEFAULT_STALE_AFTER_SECONDS)
    if stale_after <= heartbeat:
        raise ConfigError("scheduler.stale_after_seconds must be greater than scheduler.heartbeat_seconds")
    return ImportConfig(
        database=db,
        max_workers=scheduler["max_workers"],
        seconds_per_row=(data.get("estimate") or {}).get("seconds_per_row", DEFAULT_SECONDS_PER_ROW),
        default_locale=(data.get("template") or {}).get("default_locale", DEFAULT_LOCALE),
        audit_enabled=importer.get("audit_enabled", True),
        allowed_roles=tuple(importer.get("allowed_roles", DEFAULT_ALLOWED_ROLES)),
        logs_directory=Path(data.get("logs_directory", "./logs")),
        heartbeat_seconds=heartbeat,
        stale_after_seconds=stale_after,
        reservation_hold_seconds=importer.get("reservation_hold_seconds", DEFAULT_RESERVATION_HOLD_SECONDS),
    )
