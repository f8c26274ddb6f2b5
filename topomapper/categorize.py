"""Device type classification rules."""

from __future__ import annotations

import re
from typing import Optional

from topomapper.models import DeviceInfo, DeviceType

# (vendor, banner_substrings); first hit wins
_BANNER_VENDORS: list[tuple[str, list[str]]] = [
    ("MikroTik", ["mikrotik", "routeros", "swos"]),
    ("Ubiquiti", ["ubiquiti", "unifi", "ubnt", "edgeos"]),
    ("Ruckus", ["ruckus", "rkscli", "smartzone"]),
    ("Zyxel", ["zyxel"]),
    ("Inteno", ["inteno", "iopsys"]),
    ("3Com", ["3com"]),
    ("Cisco", ["cisco"]),
]

# Match patterns: (type, vendor_substrings, hostname_regex)
# A None hostname regex matches any hostname.
_VENDOR_TYPE_RULES: list[tuple[DeviceType, list[str], Optional[str]]] = [
    (DeviceType.TV, ["samsung"], r"^samsung$"),
    (DeviceType.IOT, ["tuya", "espressif", "shenzhen"], None),
    (DeviceType.ACCESS_POINT, ["ubiquiti", "ruckus"], None),
    (DeviceType.ROUTER, ["mikrotik", "tp-link", "tplink", "netgear", "d-link", "dlink"], None),
    (DeviceType.SWITCH, ["zyxel", "3com"], None),
    (DeviceType.DESKTOP_PHONE, ["cisco"], r"^spa"),
    (DeviceType.SWITCH, ["cisco"], None),
    (DeviceType.PRINTER, ["kyocera", "canon", "epson", "brother", "xerox", "lexmark", "ricoh"], None),
    (DeviceType.PRINTER, ["hp", "hewlett"], r"^hp|printer|laserjet|officejet"),
    (DeviceType.TV, ["lg"], r"tv|webos"),
    (DeviceType.TV, ["sony"], r"bravia"),
    (DeviceType.PHONE, ["apple"], r"iphone"),
    (DeviceType.TABLET, ["apple"], r"ipad"),
    (DeviceType.PHONE, ["samsung"], r"galaxy"),
    (DeviceType.COMPUTER, ["dell", "lenovo", "asus", "acer"], None),
]


def vendor_from_banner(text: str) -> Optional[str]:
    """Vendor named by SSH banner or probe output, if any."""
    lowered = text.lower()
    for vendor, needles in _BANNER_VENDORS:
        if any(n in lowered for n in needles):
            return vendor
    return None


def detect_device_type(info: DeviceInfo, vendor: Optional[str]) -> DeviceType:
    """Classify a device we logged into from its model, hostname and ports."""
    model = (info.model or "").lower()
    hostname = (info.hostname or "").lower()

    if vendor == "Zyxel" and ("gs" in model or "switch" in model or "gs" in hostname):
        return DeviceType.SWITCH
    if "router" in model or "rb" in model or "router" in hostname or "gw" in hostname:
        return DeviceType.ROUTER
    if any(s in model for s in ("switch", "sw", "css", "crs")):
        return DeviceType.SWITCH
    if (
        any(s in model for s in ("ap", "cap", "wap"))
        or "ap" in hostname
        or "wifi" in hostname
        or any(i.name.startswith("wlan") for i in info.interfaces)
    ):
        return DeviceType.ACCESS_POINT
    if sum(1 for i in info.interfaces if i.name.startswith("ether")) > 2:
        return DeviceType.SWITCH
    return DeviceType.END_DEVICE


def type_from_vendor(vendor: Optional[str], hostname: Optional[str]) -> Optional[DeviceType]:
    """Guess the type of a device we could not log into. None when nothing matches."""
    if not vendor:
        return None
    vendor_lower = vendor.lower()
    hostname_lower = (hostname or "").lower()

    for device_type, vendor_patterns, hostname_pattern in _VENDOR_TYPE_RULES:
        if not any(v in vendor_lower for v in vendor_patterns):
            continue
        if hostname_pattern is None or re.search(hostname_pattern, hostname_lower):
            return device_type
    return None
