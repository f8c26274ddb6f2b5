"""OUI (Organizationally Unique Identifier) database loading and vendor lookup."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

OUI_URL = "https://standards-oui.ieee.org/oui/oui.txt"
OUI_CACHE_PATH = Path("/tmp/oui.txt")

# Prefixes missing from, or wrong in, older IEEE snapshots.
OUI_OVERRIDES: dict[str, str] = {
    "EC:58:EA": "Ruckus",
    "B4:E6:2D": "Ruckus",
    "70:D9:31": "Ruckus",
    "00:24:1D": "Ruckus",
    "58:B6:33": "Ruckus",
    "5C:5B:35": "Ruckus",
    "D4:BD:4F": "Ruckus",
    "94:B3:4F": "Ruckus",
    "74:91:0B": "Routerboard.com",
}

# (substrings of the lower-cased registry name, display name); first hit wins
VENDOR_RULES: list[tuple[tuple[str, ...], str]] = [
    (("mikrotik", "routerboard"), "MikroTik"),
    (("ubiquiti", "ubnt"), "Ubiquiti"),
    (("ruckus",), "Ruckus"),
    (("zyxel",), "Zyxel"),
    (("cisco",), "Cisco"),
    (("aruba",), "Aruba"),
    (("juniper",), "Juniper"),
    (("netgear",), "Netgear"),
    (("tp-link",), "TP-Link"),
    (("d-link",), "D-Link"),
    (("huawei",), "Huawei"),
    (("inteno",), "Inteno"),
    (("3com",), "3Com"),
    (("fortinet",), "Fortinet"),
    (("palo alto",), "Palo Alto"),
    (("sonicwall",), "SonicWall"),
    (("watchguard",), "WatchGuard"),
    (("draytek",), "DrayTek"),
    (("apple",), "Apple"),
    (("samsung",), "Samsung"),
    (("dell",), "Dell"),
    (("lenovo",), "Lenovo"),
    (("hewlett packard enterprise", "hpe "), "HPE"),
    (("hewlett", "hp inc"), "HP"),
    (("intel",), "Intel"),
    (("microsoft",), "Microsoft"),
    (("google",), "Google"),
    (("amazon",), "Amazon"),
    (("xiaomi",), "Xiaomi"),
    (("asustek", "asus"), "ASUS"),
    (("acer",), "Acer"),
    (("sony",), "Sony"),
    (("lg elec",), "LG"),
    (("raspberry",), "Raspberry Pi"),
    (("epson",), "Epson"),
    (("brother",), "Brother"),
    (("canon",), "Canon"),
    (("fujitsu",), "Fujitsu"),
    (("vmware",), "VMware"),
    (("nvidia",), "NVIDIA"),
    (("realtek",), "Realtek"),
    (("broadcom",), "Broadcom"),
    (("qualcomm",), "Qualcomm"),
    (("espressif",), "Espressif"),
    (("texas instruments",), "Texas Instruments"),
    (("giga-byte", "gigabyte"), "Gigabyte"),
    (("micro-star", "msi"), "MSI"),
    (("asrock",), "ASRock"),
    (("supermicro", "super micro"), "Supermicro"),
    (("synology",), "Synology"),
    (("qnap",), "QNAP"),
    (("hikvision",), "Hikvision"),
    (("dahua",), "Dahua"),
    (("axis",), "Axis"),
    (("logitech",), "Logitech"),
    (("toshiba",), "Toshiba"),
    (("panasonic",), "Panasonic"),
    (("sharp",), "Sharp"),
    (("philips",), "Philips"),
    (("netapp",), "NetApp"),
    (("ibm",), "IBM"),
    (("motorola",), "Motorola"),
    (("nokia",), "Nokia"),
    (("ericsson",), "Ericsson"),
    (("humax",), "Humax"),
    (("bose",), "Bose"),
    (("sonos",), "Sonos"),
    (("roku",), "Roku"),
    (("ecobee",), "Ecobee"),
    (("honeywell",), "Honeywell"),
    (("schneider",), "Schneider Electric"),
    (("siemens",), "Siemens"),
]

_CORPORATE_SUFFIX = re.compile(
    r",?\s*(inc\.?|corp\.?|corporation|ltd\.?|limited|co\.?|llc|gmbh|s\.?a\.?|intl|international|"
    r"technology|technologies|electronics?)$",
    re.IGNORECASE,
)


def normalize_vendor_name(vendor: str) -> str:
    """Map a registry name to a short display name, e.g. ``Routerboard.com`` -> ``MikroTik``."""
    lower = vendor.lower()
    for needles, name in VENDOR_RULES:
        if any(n in lower for n in needles):
            return name
    return _CORPORATE_SUFFIX.sub("", vendor).strip()


def load_oui_db(path: Path = OUI_CACHE_PATH, download: bool = True) -> dict[str, str]:
    """Load IEEE OUI database, downloading if not cached."""
    oui_db: dict[str, str] = {}

    if not path.exists():
        if not download:
            return oui_db
        logger.info("Downloading OUI database...")
        try:
            result = subprocess.run(
                ["curl", "-sL", "-o", str(path), OUI_URL],
                capture_output=True,
                text=True,
                timeout=30,
            )
            if result.returncode != 0:
                logger.warning(f"Failed to download OUI database: {result.stderr}")
                return oui_db
        except (subprocess.TimeoutExpired, FileNotFoundError):
            logger.warning("Could not download OUI database")
            return oui_db

    try:
        with open(path) as f:
            for line in f:
                if "(hex)" in line:
                    parts = line.split("(hex)")
                    if len(parts) == 2:
                        prefix = parts[0].strip().replace("-", ":").upper()
                        oui_db[prefix] = parts[1].strip()
    except OSError:
        logger.warning("Could not read OUI database")

    return oui_db


def lookup_vendor(mac: Optional[str], oui_db: dict[str, str]) -> Optional[str]:
    """Normalised vendor for ``mac``; overrides first, then the IEEE registry."""
    if not mac or mac.upper().startswith("UNKNOWN-"):
        return None
    prefix = mac.upper().replace("-", ":")[:8]
    vendor = OUI_OVERRIDES.get(prefix) or oui_db.get(prefix)
    return normalize_vendor_name(vendor) if vendor else None
