"""Ubiquiti EdgeOS routers and UniFi access points / switches."""

from __future__ import annotations

from topomapper.drivers._parsing import first_match
from topomapper.drivers.base import keyword_confidence
from topomapper.drivers.linux import LinuxDriver
from topomapper.drivers.registry import register_driver
from topomapper.models import DeviceInfo

# EdgeOS only understands operational-mode commands through the vyatta wrapper
# when they arrive on a non-interactive exec channel.
EDGEOS_OP_WRAPPER = "/opt/vyatta/bin/vyatta-op-cmd-wrapper"


@register_driver
class EdgeOSDriver(LinuxDriver):
    name = "ubiquiti-edgeos"
    vendor = "Ubiquiti"
    identity_commands = {"version": f"{EDGEOS_OP_WRAPPER} show version"}

    def identify(self, text: str) -> float:
        return keyword_confidence(text, ("edgeos", "edgerouter", "edgeswitch", "vyatta"), 0.9)

    def describe(self, raw: dict[str, str], info: DeviceInfo) -> None:
        version = raw.get("version", "")
        info.model = first_match(r"HW model:\s*(.+)", version)
        info.serial_number = first_match(r"HW S/N:\s*(\S+)", version)
        firmware = first_match(r"Version:\s*(\S+)", version)
        info.firmware_version = f"EdgeOS {firmware}" if firmware else None


@register_driver
class UniFiDriver(LinuxDriver):
    name = "ubiquiti-unifi"
    vendor = "Ubiquiti"
    hint_confidence = 0.5
    identity_commands = {
        "info": "mca-cli-op info",
        "board": "cat /proc/ubnthal/system.info",
    }

    def identify(self, text: str) -> float:
        return keyword_confidence(text, ("ubiquiti", "unifi", "ubnt"), 0.8)

    def describe(self, raw: dict[str, str], info: DeviceInfo) -> None:
        summary = raw.get("info", "")
        board = raw.get("board", "")
        info.hostname = first_match(r"Hostname:\s*(\S+)", summary) or info.hostname
        info.model = first_match(r"Model:\s*(\S+)", summary)
        info.firmware_version = first_match(r"Version:\s*(\S+)", summary)
        info.serial_number = first_match(r"serialno=(\S+)", board)
