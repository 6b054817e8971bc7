"""
Gateway settings, read from the environment once at startup.
"""

from __future__ import annotations

import os

from pydantic import BaseModel


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class GatewaySettings(BaseModel):
    wsim_base_url: str = "https://wsim.banksim.ca"
    ssim_base_url: str = "https://ssim.banksim.ca"
    api_prefix: str = "/api/agent/v1"
    merchant_id: str = "ssim_ssim_banksim_ca"
    gateway_client_id: str = "sacp-gateway"
    gateway_base_url: str = "https://sacp.banksim.ca"
    internal_api_secret: str = ""
    http_timeout: float = 30.0
    device_auth_max_interval: int = 30
    device_auth_slow_down_step: int = 5
    step_up_ttl: int = 900
    bearer_cache_ttl: int = 300
    pending_retention: int = 3600
    check_limits: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            wsim_base_url=os.getenv("WSIM_BASE_URL", "https://wsim.banksim.ca").rstrip("/"),
            ssim_base_url=os.getenv("SSIM_BASE_URL", "https://ssim.banksim.ca").rstrip("/"),
            api_prefix=os.getenv("SACP_API_PREFIX", "/api/agent/v1"),
            merchant_id=os.getenv("SSIM_MERCHANT_ID", "ssim_ssim_banksim_ca"),
            gateway_client_id=os.getenv("GATEWAY_CLIENT_ID", "sacp-gateway"),
            gateway_base_url=os.getenv("GATEWAY_BASE_URL", "https://sacp.banksim.ca").rstrip("/"),
            internal_api_secret=os.getenv("INTERNAL_API_SECRET", ""),
            http_timeout=float(os.getenv("SACP_HTTP_TIMEOUT", "30")),
            device_auth_max_interval=int(os.getenv("SACP_DEVICE_AUTH_MAX_INTERVAL", "30")),
            device_auth_slow_down_step=int(os.getenv("SACP_DEVICE_AUTH_SLOW_DOWN_STEP", "5")),
            step_up_ttl=int(os.getenv("SACP_STEP_UP_TTL", "900")),
            bearer_cache_ttl=int(os.getenv("SACP_BEARER_CACHE_TTL", "300")),
            pending_retention=int(os.getenv("SACP_PENDING_RETENTION", "3600")),
            check_limits=_env_bool("SACP_CHECK_LIMITS", "true"),
            log_level=os.getenv("SACP_LOG_LEVEL", "INFO").upper(),
        )
