"""Crawl settings, overridable through ``TOPOMAPPER_*`` environment variables."""

from __future__ import annotations

import os
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

ENV_PREFIX = "TOPOMAPPER_"

# SSH, Telnet, HTTP(S), Winbox/API, SNMP, Ruckus AP management
MANAGEMENT_PORTS = [22, 23, 80, 443, 8291, 8728, 161, 8090, 8099, 8100, 9998]


class CrawlSettings(BaseModel):
    workers: int = Field(default=4, ge=1, le=64)
    connect_timeout: float = 15.0
    connect_retries: int = Field(default=2, ge=0)
    retry_delay: float = 0.5
    command_timeout: float = 10.0
    shell_timeout: float = 45.0
    cache_ttl_days: int = 30
    mdns_window: float = 5.0
    enable_mdns: bool = True
    snmp_community: str = "public"
    snmp_timeout: float = 3.0
    enable_snmp: bool = True
    port_probe_timeout: float = 3.0
    management_ports: list[int] = Field(default_factory=lambda: list(MANAGEMENT_PORTS))
    web_fetch: bool = True
    jump_host: bool = True

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None, **overrides: Any) -> "CrawlSettings":
        """Build settings from ``TOPOMAPPER_<FIELD>`` variables, then apply overrides.

        List fields take comma-separated values, e.g.
        ``TOPOMAPPER_MANAGEMENT_PORTS=22,80``.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if field.annotation == list[int]:
                values[name] = [int(p) for p in raw.split(",") if p.strip()]
            else:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as e:
            logger.error(f"Invalid {ENV_PREFIX}* settings: {e}")
            raise
