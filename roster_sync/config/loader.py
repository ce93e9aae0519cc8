from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from dotenv import load_dotenv
from jsonschema.exceptions import ValidationError

"""Config loader.

Responsibilities:
- Load YAML config (default config/sync.yml)
- Validate against config_schema.json (shipped next to this module)
- Apply defaults (tab Devices, identity column Serial, transactions auto, ...)
- Apply environment overrides (.env first, then process environment)
"""

__all__ = [
    "ConfigError",
    "StoreConfig",
    "NotificationConfig",
    "SyncConfig",
    "DEFAULT_CONFIG_PATH",
    "load_config",
    "load_env_file",
    "apply_env_overrides",
]

SCHEMA_PATH = Path(__file__).parent / "config_schema.json"
DEFAULT_CONFIG_PATH = Path("config/sync.yml")

TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class StoreConfig:
    """Document store connection settings.

    Environment variables take precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None
    transactions: str = "auto"  # auto | enabled | disabled


@dataclass(frozen=True)
class NotificationConfig:
    webhook_url: str | None = None
    paused: bool = False
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class SyncConfig:
    sheet_id: str
    workbook: str
    tab_name: str = "Devices"
    identity_column: str = "Serial"
    store: StoreConfig = StoreConfig()
    notifications: NotificationConfig = NotificationConfig()
    max_dynamic_columns: int = 100
    anomaly_sample_limit: int = 25
    telemetry_directory: str = "./logs"


def _validate_config_schema(data: dict[str, Any]) -> None:
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def load_env_file(path: Path, override: bool = True) -> bool:
    """Load a .env file with python-dotenv; override=True lets .env win over the shell."""
    if not path.exists():
        return False
    return load_dotenv(dotenv_path=path, override=override)


def apply_env_overrides(cfg: SyncConfig, environ: dict[str, str] | None = None) -> SyncConfig:
    env = os.environ if environ is None else environ

    store = cfg.store
    dsn = env.get("DATABASE_URL") or env.get("PGDSN")
    if dsn:
        store = replace(store, dsn=dsn)
    if env.get("PGHOST"):
        store = replace(store, host=env["PGHOST"])
    if env.get("PGPORT"):
        try:
            store = replace(store, port=int(env["PGPORT"]))
        except ValueError as e:
            raise ConfigError(f"PGPORT must be an integer: {env['PGPORT']!r}") from e
    for key, attr in (("PGUSER", "user"), ("PGPASSWORD", "password"), ("PGDATABASE", "database")):
        if env.get(key):
            store = replace(store, **{attr: env[key]})

    notifications = cfg.notifications
    if env.get("SYNC_WEBHOOK_URL"):
        notifications = replace(notifications, webhook_url=env["SYNC_WEBHOOK_URL"])
    if env.get("SYNC_NOTIFICATIONS_PAUSED"):
        notifications = replace(
            notifications, paused=env["SYNC_NOTIFICATIONS_PAUSED"].strip().lower() in TRUTHY
        )

    return replace(cfg, store=store, notifications=notifications)


def load_config(path: Path = DEFAULT_CONFIG_PATH, *, use_env: bool = True) -> SyncConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e

    _validate_config_schema(data)

    sheet = data["sheet"]
    store_raw = data.get("store") or {}
    sync_raw = data.get("sync") or {}
    notify_raw = data.get("notifications") or {}
    telemetry_raw = data.get("telemetry") or {}

    cfg = SyncConfig(
        sheet_id=sheet["sheet_id"],
        workbook=data["source"]["workbook"],
        tab_name=sheet.get("tab_name", "Devices"),
        identity_column=sheet.get("identity_column", "Serial"),
        store=StoreConfig(
            host=store_raw.get("host"),
            port=store_raw.get("port"),
            user=store_raw.get("user"),
            password=store_raw.get("password"),
            database=store_raw.get("database"),
            dsn=store_raw.get("dsn"),
            transactions=store_raw.get("transactions", "auto"),
        ),
        notifications=NotificationConfig(
            webhook_url=notify_raw.get("webhook_url"),
            paused=bool(notify_raw.get("paused", False)),
            timeout_seconds=float(notify_raw.get("timeout_seconds", 5.0)),
        ),
        max_dynamic_columns=sync_raw.get("max_dynamic_columns", 100),
        anomaly_sample_limit=sync_raw.get("anomaly_sample_limit", 25),
        telemetry_directory=telemetry_raw.get("directory", "./logs"),
    )
    if use_env:
        cfg = apply_env_overrides(cfg)
    return cfg
