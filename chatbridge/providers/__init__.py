from __future__ import annotations

from typing import Any

from ..accounts import ChatCredentials
from ..config import ChatbridgeConfig
from .base import ChatClient
from .mattermost import MattermostAdmin, MattermostClient
from .matrix import MatrixAdmin, MatrixClient


def build_admin(config: ChatbridgeConfig) -> MattermostAdmin | MatrixAdmin:
    if config.provider == "matrix":
        return MatrixAdmin(
            config.matrix_url,
            config.matrix_shared_secret,
            device_id=config.matrix_device_id,
            device_name=config.matrix_device_name,
            timeout_s=config.http_timeout_s,
        )
    return MattermostAdmin(
        config.mattermost_url,
        config.mattermost_admin_token,
        default_team=config.mattermost_default_team,
        timeout_s=config.http_timeout_s,
    )


def build_client(creds: ChatCredentials, config: ChatbridgeConfig) -> Any:
    provider = creds.provider or config.provider
    if provider == "matrix":
        return MatrixClient(
            creds,
            timeout_s=config.http_timeout_s,
            request_interval_ms=config.request_interval_ms,
            sync_timeout_ms=config.matrix_sync_timeout_ms,
            reconnect_delay_s=config.ws_reconnect_delay_s,
        )
    return MattermostClient(
        creds,
        default_team=config.mattermost_default_team,
        timeout_s=config.http_timeout_s,
        reconnect_delay_s=config.ws_reconnect_delay_s,
    )


__all__ = [
    "ChatClient",
    "MatrixAdmin",
    "MatrixClient",
    "MattermostAdmin",
    "MattermostClient",
    "build_admin",
    "build_client",
]
