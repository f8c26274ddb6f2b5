"""mDNS/Bonjour sweep: IP -> advertised hostname and service types."""

from __future__ import annotations

import re
import threading
import time
from typing import Any, Callable, Optional

from loguru import logger
from zeroconf import ServiceBrowser, ServiceListener, Zeroconf

from topomapper.models import MdnsDevice

DEFAULT_WINDOW = 5.0
INFO_TIMEOUT_MS = 1500

SERVICE_TYPES = [
    "_http._tcp.local.",
    "_https._tcp.local.",
    "_printer._tcp.local.",
    "_ipp._tcp.local.",
    "_ipps._tcp.local.",
    "_pdl-datastream._tcp.local.",
    "_scanner._tcp.local.",
    "_smb._tcp.local.",
    "_afpovertcp._tcp.local.",
    "_ssh._tcp.local.",
    "_workstation._tcp.local.",
    "_device-info._tcp.local.",
]

_SERVICE_SHORT = re.compile(r"^_([^.]+)\._(?:tcp|udp)")


def _strip_local_suffix(hostname: str) -> str:
    cleaned = hostname.rstrip(".")
    if cleaned.endswith(".local"):
        return cleaned[: -len(".local")]
    return cleaned


def _pick_ipv4(addresses: list[str]) -> Optional[str]:
    for address in addresses:
        if ":" not in address:
            return address
    return None


class MdnsListener(ServiceListener):
    """Collects resolved services into ``MdnsDevice`` records keyed by IP."""

    def __init__(self, info_timeout_ms: int = INFO_TIMEOUT_MS) -> None:
        self._info_timeout_ms = info_timeout_ms
        self._lock = threading.Lock()
        self._found: dict[str, MdnsDevice] = {}

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        info = zc.get_service_info(type_, name, timeout=self._info_timeout_ms)
        if not info:
            return
        ip = _pick_ipv4(info.parsed_addresses())
        if ip is None:
            return
        hostname = _strip_local_suffix(info.server or "")
        m = _SERVICE_SHORT.match(type_)
        service = m.group(1) if m else type_
        with self._lock:
            device = self._found.setdefault(ip, MdnsDevice(ip=ip, hostname=hostname))
            if not device.hostname:
                device.hostname = hostname
            if service not in device.services:
                device.services.append(service)
        logger.debug(f"mDNS: {ip} ({hostname or '?'}) offers {service}")

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.add_service(zc, type_, name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        # devices seen once during the window stay in the result
        pass

    def devices(self) -> dict[str, MdnsDevice]:
        with self._lock:
            return {ip: d.model_copy(deep=True) for ip, d in self._found.items()}


def scan_mdns(
    window: float = DEFAULT_WINDOW,
    zeroconf_factory: Callable[[], Any] = Zeroconf,
) -> dict[str, MdnsDevice]:
    """Browse ``SERVICE_TYPES`` for ``window`` seconds.

    Failures (no multicast route, permission errors) yield an empty result.
    """
    try:
        zeroconf = zeroconf_factory()
    except OSError as e:
        logger.warning(f"mDNS scan unavailable: {e}")
        return {}
    listener = MdnsListener()
    try:
        ServiceBrowser(zeroconf, SERVICE_TYPES, listener)
        time.sleep(window)
    except Exception as e:
        logger.warning(f"mDNS scan failed: {e}")
    finally:
        zeroconf.close()
    devices = listener.devices()
    logger.debug(f"mDNS scan complete: found {len(devices)} devices")
    return devices
