"""Zyxel GS-series switches (interactive shell only, Cisco-like CLI)."""

from __future__ import annotations

import re
from collections import Counter
from typing import Optional

import requests

from topomapper.drivers._parsing import MAC_RE, first_match, format_vlan, parse_port_range
from topomapper.drivers.base import BaseDriver, FetchContext, keyword_confidence
from topomapper.drivers.registry import register_driver
from topomapper.models import DeviceInfo, InterfaceInfo, LogLevel, NeighborInfo, NeighborSource
from topomapper.session.terminal import ShellProfile, strip_control_chars
from topomapper.session.transport import BaseTransport

COMMANDS = [
    "show system-information",
    "show mac address-table all",
    "show interfaces status",
    "show running-config",
    "show vlan",
]

WEB_SERIAL_PATH = "/FirstPage.html"
WEB_TIMEOUT = 5
DEFAULT_VLAN = "1"

_SERIAL_RE = re.compile(r"S\d{3}[A-Z]\d+")
_VLAN_LINE = re.compile(r"^\s*(\d+)\s+\S+\s+\S+\s+(\S*)\s+(\S*)")
_PORT_LINE = re.compile(r"^\s*(\d+)\s+")
_LINK_SPEED = re.compile(r"\d+M/[HF]")
_MAC_LINE = re.compile(r"^\s*(\d+)\s+\d+\s+" + MAC_RE.pattern + r"\s+")


def _port_name(number: int | str) -> str:
    return f"Port {number}"


def parse_vlans(output: str) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
    """``show vlan`` -> (untagged VLANs per port, tagged VLANs per port)."""
    untagged: dict[str, list[str]] = {}
    tagged: dict[str, list[str]] = {}
    for line in output.splitlines():
        if "VLAN" in line and ("Name" in line or "Status" in line):
            continue
        if "----" in line:
            continue
        m = _VLAN_LINE.match(line)
        if not m:
            continue
        vlan_id, tagged_ports, untagged_ports = m.groups()
        for target, ports in ((untagged, untagged_ports), (tagged, tagged_ports)):
            for port in parse_port_range(ports):
                vlans = target.setdefault(_port_name(port), [])
                if vlan_id not in vlans:
                    vlans.append(vlan_id)
    return untagged, tagged


def parse_interfaces(output: str, vlan_output: str = "") -> list[InterfaceInfo]:
    untagged, tagged = parse_vlans(vlan_output)
    interfaces = []
    for line in output.splitlines():
        if "Port" in line and "Name" in line and "Link" in line:
            continue
        if "----" in line:
            continue
        m = _PORT_LINE.match(line)
        if not m:
            continue
        name = _port_name(m.group(1))
        access = [v for v in untagged.get(name, []) if v != DEFAULT_VLAN]
        trunk = [v for v in tagged.get(name, []) if v != DEFAULT_VLAN]
        interfaces.append(
            InterfaceInfo(
                name=name,
                vlan=format_vlan(access[0] if access else None, trunk),
                link_up="Down" not in line and bool(_LINK_SPEED.search(line)),
            )
        )
    return interfaces


def parse_mac_table(output: str) -> list[NeighborInfo]:
    neighbors = []
    for line in output.splitlines():
        if "Port" in line and "VLAN" in line and "MAC" in line:
            continue
        m = _MAC_LINE.match(line)
        if m:
            neighbors.append(
                NeighborInfo(mac=m.group(2).upper(), interface=_port_name(m.group(1)), source=NeighborSource.BRIDGE_HOST)
            )
    return neighbors


def detect_uplink(neighbors: list[NeighborInfo]) -> Optional[str]:
    """Port that learned the most MACs, if it clearly stands out.

    It must carry at least 3 MACs and more than twice the average of the
    other ports.
    """
    counts = Counter(n.interface for n in neighbors)
    if not counts:
        return None
    port, top = counts.most_common(1)[0]
    if top < 3:
        return None
    others = [c for p, c in counts.items() if p != port]
    average = sum(others) / len(others) if others else 0
    if top <= average * 2:
        return None
    return port


def fetch_web_serial(host: str, password: str) -> Optional[str]:
    """Read the serial number from the web UI, HTTPS first, then HTTP."""
    session = requests.Session()
    session.verify = False
    session.auth = ("admin", password)
    try:
        for scheme in ("https", "http"):
            try:
                resp = session.get(f"{scheme}://{host}{WEB_SERIAL_PATH}", timeout=WEB_TIMEOUT)
            except requests.RequestException:
                continue
            m = _SERIAL_RE.search(resp.text)
            if m:
                return m.group(0)
    finally:
        session.close()
    return None


@register_driver
class ZyxelDriver(BaseDriver):
    name = "zyxel"
    vendor = "Zyxel"
    uses_shell = True
    hint_confidence = 0.7
    profile = ShellProfile(ready=re.compile(r"\w+#\s*$"), strip_init_run=True, width=80, height=200)

    def identify(self, text: str) -> float:
        return keyword_confidence(text, ("zyxel", "zynos"), 0.85)

    def fetch(self, transport: BaseTransport, ctx: FetchContext) -> DeviceInfo:
        outputs = [strip_control_chars(o, strip_init_run=True) for o in self.run_shell(transport, COMMANDS, ctx)]
        sys_info, mac_table, if_status, running_config, vlans = outputs

        info = DeviceInfo(
            hostname=first_match(r"System Name\s*:\s*(\S+)", sys_info, re.IGNORECASE),
            model=first_match(r"Product Model\s*:\s*(\S+)", sys_info, re.IGNORECASE),
            serial_number=first_match(r"Serial Number\s*:\s*(\S+)", sys_info, re.IGNORECASE),
            firmware_version=first_match(r"ZyNOS F/W Version\s*:\s*(\S+)", sys_info, re.IGNORECASE),
            interfaces=parse_interfaces(if_status, vlans),
        )

        web_password = first_match(r"admin-password\s+(\S+)", running_config) or ctx.credential.password
        if info.serial_number is None and ctx.web_fetch and web_password and ctx.host:
            ctx.log(LogLevel.INFO, f"{ctx.host}: Serial not in CLI, trying web interface")
            info.serial_number = fetch_web_serial(ctx.host, web_password)
            if info.serial_number is None:
                ctx.log(LogLevel.INFO, f"{ctx.host}: Web interface not reachable (HTTP/HTTPS) - serial number unavailable")

        neighbors = parse_mac_table(mac_table)
        uplink = detect_uplink(neighbors)
        info.own_upstream_interface = uplink
        info.neighbors = [n for n in neighbors if n.interface != uplink] if uplink else neighbors
        ctx.log(
            LogLevel.INFO,
            f"{ctx.host}: Parsed hostname={info.hostname}, model={info.model}, interfaces={len(info.interfaces)}, "
            f"neighbors={len(info.neighbors)}, uplink={uplink or 'unknown'}",
        )
        return info
