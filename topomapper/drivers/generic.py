"""Fallback driver: anything with a POSIX-ish exec channel."""

from __future__ import annotations

from topomapper.drivers._parsing import sanitize_hostname
from topomapper.drivers.base import BaseDriver, FetchContext
from topomapper.drivers.registry import register_driver
from topomapper.models import DeviceInfo
from topomapper.session.transport import BaseTransport

FALLBACK_CONFIDENCE = 0.1


@register_driver
class GenericDriver(BaseDriver):
    name = "generic"

    def identify(self, text: str) -> float:
        return FALLBACK_CONFIDENCE

    def fetch(self, transport: BaseTransport, ctx: FetchContext) -> DeviceInfo:
        return DeviceInfo(hostname=sanitize_hostname(self.exec_quiet(transport, "hostname", ctx)))
