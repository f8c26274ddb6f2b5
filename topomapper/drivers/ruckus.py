"""Ruckus access points: Unleashed CLI and the standalone ``rkscli`` shell."""

from __future__ import annotations

import re
from typing import Optional

from topomapper.drivers._parsing import IPV4_RE, MAC_RE, first_match
from topomapper.drivers.base import BaseDriver, FetchContext, keyword_confidence
from topomapper.drivers.registry import register_driver
from topomapper.models import Credential, DeviceInfo, InterfaceInfo, LogLevel, NeighborInfo, NeighborSource
from topomapper.session.terminal import LoginStep, SessionState, ShellProfile, strip_control_chars
from topomapper.session.transport import BaseTransport

RADIO_INTERFACES = ("wlan0", "wlan1")

UNLEASHED_COMMANDS = ["show sysinfo", "show current-active-clients all"]
RKSCLI_COMMANDS = [
    "get device-name",
    "get boarddata",
    "get version",
    *(f"get station {radio} list" for radio in RADIO_INTERFACES),
]

RKSCLI_MARKERS = ("rkscli", "smartzone", "please login")


def is_rkscli_banner(text: str) -> bool:
    """SmartZone-managed APs greet with a second, shell-level login."""
    lowered = text.lower()
    return any(marker in lowered for marker in RKSCLI_MARKERS)


def _radio_interfaces() -> list[InterfaceInfo]:
    return [InterfaceInfo(name=name) for name in RADIO_INTERFACES]


def parse_sysinfo(output: str) -> DeviceInfo:
    """``show sysinfo`` lines look like ``Name= R510-Master`` or ``Serial#= 1234``."""
    return DeviceInfo(
        hostname=first_match(r"Name\s*[=:]\s*(\S+)", output, re.IGNORECASE),
        model=first_match(r"Model\s*[=:]\s*(\S+)", output, re.IGNORECASE),
        serial_number=first_match(r"Serial#?\s*[=:]\s*(\S+)", output, re.IGNORECASE),
        firmware_version=first_match(r"Version\s*[=:]\s*(\S+)", output, re.IGNORECASE),
        interfaces=_radio_interfaces(),
    )


def parse_clients(output: str, interface: str = "wlan0") -> list[NeighborInfo]:
    """Client table rows: MAC, IP, user name, WLAN, AP name, ..."""
    neighbors = []
    for line in output.splitlines():
        if "MAC Address" in line or "---" in line or not line.strip():
            continue
        mac = first_match(MAC_RE, line)
        if not mac:
            continue
        parts = line.split()
        hostname: Optional[str] = parts[2] if len(parts) > 2 and parts[2] != "-" else None
        if hostname and (MAC_RE.fullmatch(hostname) or IPV4_RE.fullmatch(hostname)):
            hostname = None
        neighbors.append(
            NeighborInfo(
                mac=mac.upper(),
                ip=first_match(IPV4_RE, line),
                hostname=hostname,
                interface=interface,
                source=NeighborSource.BRIDGE_HOST,
            )
        )
    return neighbors


@register_driver
class RuckusUnleashedDriver(BaseDriver):
    name = "ruckus-unleashed"
    vendor = "Ruckus"
    uses_shell = True
    hint_confidence = 0.6
    profile = ShellProfile(ready=re.compile(r"[\w-]+[>#]\s*$"), width=120, height=200)

    def identify(self, text: str) -> float:
        return keyword_confidence(text, ("ruckus", "unleashed"), 0.8)

    def login_steps(self, credential: Credential) -> list[LoginStep]:
        return [LoginStep(expect=re.compile(r"[\w-]+>\s*$"), send="enable", optional=True)]

    def fetch(self, transport: BaseTransport, ctx: FetchContext) -> DeviceInfo:
        sysinfo, clients = (strip_control_chars(o) for o in self.run_shell(transport, UNLEASHED_COMMANDS, ctx))
        info = parse_sysinfo(sysinfo)
        info.neighbors = parse_clients(clients)
        ctx.log(
            LogLevel.INFO,
            f"{ctx.host}: Parsed hostname={info.hostname}, model={info.model}, serial={info.serial_number}, "
            f"neighbors={len(info.neighbors)}",
        )
        return info


@register_driver
class RuckusSmartZoneDriver(BaseDriver):
    """Controller-managed AP: SSH lands in ``rkscli`` which asks for credentials again."""

    name = "ruckus-smartzone"
    vendor = "Ruckus"
    uses_shell = True
    profile = ShellProfile(ready=re.compile(r"rkscli:\s*$"), width=120, height=200)

    def identify(self, text: str) -> float:
        return 0.9 if is_rkscli_banner(text) else 0.0

    def login_steps(self, credential: Credential) -> list[LoginStep]:
        return [
            LoginStep(
                expect=re.compile(r"Please login:\s*$", re.IGNORECASE),
                send=credential.username,
                state=SessionState.AWAITING_LOGIN,
            ),
            LoginStep(
                expect=re.compile(r"password\s*:\s*$", re.IGNORECASE),
                send=credential.password,
                state=SessionState.AWAITING_PASSWORD,
                secret=True,
            ),
        ]

    def fetch(self, transport: BaseTransport, ctx: FetchContext) -> DeviceInfo:
        outputs = [strip_control_chars(o) for o in self.run_shell(transport, RKSCLI_COMMANDS, ctx)]
        device_name, boarddata, version = outputs[:3]
        info = DeviceInfo(
            hostname=first_match(r"device-name\s*:\s*'?([^'\n]+)'?", device_name),
            model=first_match(r"Model\s*:\s*(\S+)", boarddata, re.IGNORECASE),
            serial_number=first_match(r"Serial#?\s*:\s*(\S+)", boarddata, re.IGNORECASE),
            firmware_version=first_match(r"Version\s*:\s*(\S+)", version, re.IGNORECASE),
            interfaces=_radio_interfaces(),
        )
        for radio, stations in zip(RADIO_INTERFACES, outputs[3:]):
            info.neighbors.extend(parse_clients(stations, interface=radio))
        ctx.log(
            LogLevel.INFO,
            f"{ctx.host}: Parsed hostname={info.hostname}, model={info.model}, serial={info.serial_number}, "
            f"neighbors={len(info.neighbors)}",
        )
        return info
