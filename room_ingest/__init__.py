from __future__ import annotations

from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError
from .pipeline import handle_webhook, run_ingestion
from .storage import SQLiteListingStore

__all__ = [
    "AppConfig",
    "ConfigError",
    "SQLiteListingStore",
    "config_sha256",
    "handle_webhook",
    "load_config",
    "resolve_runtime_secrets",
    "run_ingestion",
]
