from __future__ import annotations

import json
import os
import warnings
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/chatbridge/config.json").expanduser()

PROVIDERS = ("mattermost", "matrix")

CONFIG_ENV_OVERRIDES = {
    "provider": "CHATBRIDGE_PROVIDER",
    "mattermost_url": "CHATBRIDGE_MATTERMOST_URL",
    "mattermost_admin_token": "CHATBRIDGE_MATTERMOST_ADMIN_TOKEN",
    "mattermost_default_team": "CHATBRIDGE_MATTERMOST_DEFAULT_TEAM",
    "matrix_url": "CHATBRIDGE_MATRIX_URL",
    "matrix_shared_secret": "CHATBRIDGE_MATRIX_SHARED_SECRET",
    "jwt_secret": "CHATBRIDGE_JWT_SECRET",
    "api_host": "CHATBRIDGE_API_HOST",
    "api_port": "CHATBRIDGE_API_PORT",
    "api_url": "CHATBRIDGE_API_URL",
    "accounts_db_path": "CHATBRIDGE_ACCOUNTS_DB",
    "db_path": "CHATBRIDGE_DB",
    "session_path": "CHATBRIDGE_SESSION",
    "sync_interval_s": "CHATBRIDGE_SYNC_INTERVAL_S",
}

_INT_KEYS = {
    "jwt_ttl_s",
    "api_port",
    "sync_interval_s",
    "fetch_limit",
    "request_interval_ms",
    "matrix_sync_timeout_ms",
}
_FLOAT_KEYS = {"ws_reconnect_delay_s", "http_timeout_s"}

MIN_JWT_SECRET_LENGTH = 10


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CHATBRIDGE_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class ChatbridgeConfig:
    provider: str = "mattermost"
    mattermost_url: str = "http://localhost:8065"
    mattermost_admin_token: str | None = None
    mattermost_default_team: str | None = None
    matrix_url: str = "http://dendrite:8008"
    matrix_shared_secret: str | None = None
    matrix_device_id: str = "workplace_app"
    matrix_device_name: str = "Workplace App"
    jwt_secret: str | None = None
    jwt_ttl_s: int = 7 * 24 * 3600
    api_host: str = "127.0.0.1"
    api_port: int = 4000
    api_url: str | None = None
    accounts_db_path: str = "~/.chatbridge/accounts.sqlite"
    db_path: str = "~/.chatbridge/cache.sqlite"
    session_path: str = "~/.config/chatbridge/session.json"
    sync_interval_s: int = 60
    ws_reconnect_delay_s: float = 3.0
    fetch_limit: int = 1000
    request_interval_ms: int = 100
    http_timeout_s: float = 10.0
    matrix_sync_timeout_ms: int = 30000

    @property
    def server_url(self) -> str:
        if self.provider == "matrix":
            return self.matrix_url
        return self.mattermost_url

    @property
    def resolved_api_url(self) -> str:
        if self.api_url:
            return self.api_url.rstrip("/")
        host = self.api_host
        if host in {"0.0.0.0", "::", "::0"}:
            host = "127.0.0.1"
        return f"http://{host}:{self.api_port}"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_provider(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in PROVIDERS:
        return value.strip().lower()
    warnings.warn(f"Invalid provider: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> ChatbridgeConfig:
    cfg = ChatbridgeConfig()
    try:
        data = read_config_file(path)
    except ValueError:
        data = {}
    cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: ChatbridgeConfig, data: dict[str, Any]) -> ChatbridgeConfig:
    for key, value in data.items():
        if not hasattr(cfg, key) or isinstance(getattr(type(cfg), key, None), property):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key == "provider":
            cfg.provider = _coerce_provider(value, cfg.provider)
            continue
        setattr(cfg, key, value)
    return cfg


def validate_service_config(cfg: ChatbridgeConfig) -> list[str]:
    """Return the problems that keep the credential bridge from starting."""

    problems: list[str] = []
    if not cfg.jwt_secret or len(cfg.jwt_secret) < MIN_JWT_SECRET_LENGTH:
        problems.append(f"jwt_secret must be at least {MIN_JWT_SECRET_LENGTH} characters")
    if cfg.provider == "mattermost" and not cfg.mattermost_admin_token:
        problems.append("mattermost_admin_token is required")
    if cfg.provider == "matrix" and not cfg.matrix_shared_secret:
        problems.append("matrix_shared_secret is required")
    return problems
