"""Configuration for schoolsync.

Resolution order for every setting:
1. Built-in defaults (SyncConfig field defaults)
2. {data_home}/config.json
3. SCHOOLSYNC_* environment variables
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_CLOUD_BASE_URL = "https://accounts.betterseqta.org"

# Environment variable -> SyncConfig field
ENV_OVERRIDES = {
    "SCHOOLSYNC_PROFILE": "profile",
    "SCHOOLSYNC_DB_PATH": "db_path",
    "SCHOOLSYNC_BACKEND_URL": "cloud_base_url",
    "SCHOOLSYNC_REQUEST_TIMEOUT": "request_timeout",
    "SCHOOLSYNC_DRAIN_TIMEOUT": "drain_timeout",
    "SCHOOLSYNC_RELOAD_GUARD_SECONDS": "reload_guard_seconds",
    "SCHOOLSYNC_DEFAULT_TTL_MINUTES": "default_ttl_minutes",
    "SCHOOLSYNC_SWEEP_INTERVAL": "sweep_interval_seconds",
    "SCHOOLSYNC_RETENTION_DAYS": "retention_days",
    "SCHOOLSYNC_LOG_LEVEL": "log_level",
}


def get_data_home() -> Path:
    """Directory holding the database, config, credentials and logs."""
    override = os.environ.get("SCHOOLSYNC_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".schoolsync"


@dataclass
class SyncConfig:
    """Tunables for the offline core."""

    profile: str = "default"
    db_path: Optional[Path] = None
    cloud_base_url: str = DEFAULT_CLOUD_BASE_URL
    request_timeout: float = 10.0
    drain_timeout: float = 15.0
    reload_guard_seconds: float = 5.0
    default_ttl_minutes: int = 10
    sweep_interval_seconds: float = 300.0
    notification_spacing_seconds: float = 0.1
    retention_days: int = 30
    heartbeat_interval_seconds: float = 60.0
    log_level: str = "INFO"

    def resolved_db_path(self) -> Path:
        if self.db_path is not None:
            return Path(self.db_path)
        return get_data_home() / f"{self.profile}.db"


def _coerce(name: str, raw: Any, current: Any) -> Any:
    """Coerce a raw config value to the type of the field's current value."""
    if name == "db_path":
        return Path(raw).expanduser() if raw else None
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return str(raw)


def _apply(config: SyncConfig, values: Dict[str, Any], source: str) -> None:
    known = {f.name for f in fields(SyncConfig)}
    for name, raw in values.items():
        if name not in known:
            logger.debug(f"Ignoring unknown config key {name!r} from {source}")
            continue
        try:
            setattr(config, name, _coerce(name, raw, getattr(config, name)))
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid value for {name!r} in {source}: {e}; keeping default")


def load_config(path: Optional[Path] = None) -> SyncConfig:
    """Load SyncConfig from config.json and the environment."""
    config = SyncConfig()

    config_path = path or (get_data_home() / "config.json")
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
            if isinstance(data, dict):
                _apply(config, data, str(config_path))
            else:
                logger.warning(f"{config_path} does not contain a JSON object; ignoring")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to read {config_path}: {e}")

    env_values = {
        field_name: os.environ[env_name]
        for env_name, field_name in ENV_OVERRIDES.items()
        if os.environ.get(env_name)
    }
    _apply(config, env_values, "environment")

    validated = validate_backend_url(config.cloud_base_url)
    if validated is None:
        logger.warning("Falling back to the default cloud backend URL")
        config.cloud_base_url = DEFAULT_CLOUD_BASE_URL
    config.cloud_base_url = config.cloud_base_url.rstrip("/")

    return config


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL before sending credentials to it.

    Rejects non-http/https schemes, URLs with no host, and remote plain-HTTP
    endpoints (only localhost/127.0.0.1 may use http).

    Returns:
        The URL unchanged if valid, or None if rejected.
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url


def load_cloud_credentials() -> Optional[Dict[str, str]]:
    """Load cloud credentials from credentials.json or the environment.

    Priority:
    1. {data_home}/credentials.json
    2. Environment variables (SCHOOLSYNC_USER_ID, SCHOOLSYNC_AUTH_TOKEN)

    Returns:
        Dict with 'user_id' and 'auth_token', or None if not configured.
    """
    user_id = None
    auth_token = None

    credentials_path = get_data_home() / "credentials.json"
    if credentials_path.exists():
        try:
            with open(credentials_path) as f:
                creds = json.load(f)
            user_id = creds.get("user_id")
            # Accept both "auth_token" (preferred) and "token" (legacy)
            auth_token = creds.get("auth_token") or creds.get("token")
        except (json.JSONDecodeError, OSError, AttributeError) as e:
            logger.debug(f"Failed to load credentials file: {e}")

    user_id = os.environ.get("SCHOOLSYNC_USER_ID") or user_id
    auth_token = os.environ.get("SCHOOLSYNC_AUTH_TOKEN") or auth_token

    if user_id and auth_token:
        return {"user_id": str(user_id), "auth_token": str(auth_token)}
    return None
