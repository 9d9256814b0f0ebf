from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import os
import socket


DEFAULT_USERNAME = "hue-xpl"


def _default_xpl_source() -> str:
    host = socket.gethostname()
    if "." in host:
        host = host[: host.index(".")]
    return f"hue.{host}"


@dataclass(frozen=True)
class AppConfig:
    port: int
    bridge_host: Optional[str]
    bridge_port: Optional[int]
    username: str
    bridge_timeout_ms: int
    retry_delay_ms: int
    poll_interval_ms: int
    retry_ceiling: int
    group_refresh_seconds: int
    device_aliases: Optional[str]
    xpl_source: str
    xpl_broadcast: str
    xpl_port: int
    xpl_bind_host: str
    xpl_heartbeat_seconds: int
    log_level: str

    @staticmethod
    def from_env() -> "AppConfig":
        bridge_port = os.getenv("HUE_BRIDGE_PORT")
        return AppConfig(
            port=int(os.getenv("PORT", "8000")),
            bridge_host=os.getenv("HUE_BRIDGE_HOST"),
            bridge_port=int(bridge_port) if bridge_port else None,
            username=os.getenv("HUE_USERNAME") or DEFAULT_USERNAME,
            bridge_timeout_ms=int(os.getenv("HUE_TIMEOUT_MS", "10000")),
            retry_delay_ms=int(os.getenv("HUE_RETRY_DELAY_MS", "300")),
            poll_interval_ms=int(os.getenv("POLL_INTERVAL_MS", "500")),
            retry_ceiling=int(os.getenv("RETRY_CEILING", "10")),
            group_refresh_seconds=int(os.getenv("GROUP_REFRESH_SECONDS", "300")),
            device_aliases=os.getenv("DEVICE_ALIASES"),
            xpl_source=os.getenv("XPL_SOURCE") or _default_xpl_source(),
            xpl_broadcast=os.getenv("XPL_BROADCAST", "255.255.255.255"),
            xpl_port=int(os.getenv("XPL_PORT", "3865")),
            xpl_bind_host=os.getenv("XPL_BIND_HOST", "0.0.0.0"),
            xpl_heartbeat_seconds=int(os.getenv("XPL_HEARTBEAT_SECONDS", "300")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def retry_delay(self) -> float:
        return self.retry_delay_ms / 1000.0

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0
