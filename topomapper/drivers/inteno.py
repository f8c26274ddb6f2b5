"""Inteno / iopsys home gateways (OpenWrt userland, exec channel)."""

from __future__ import annotations

from topomapper.drivers._parsing import first_match
from topomapper.drivers.base import keyword_confidence
from topomapper.drivers.linux import LinuxDriver
from topomapper.drivers.registry import register_driver
from topomapper.models import DeviceInfo


@register_driver
class IntenoDriver(LinuxDriver):
    name = "inteno"
    vendor = "Inteno"
    hint_confidence = 0.5
    identity_commands = {
        "model": "db get hw.board.hardware",
        "serial": "db get hw.board.serialNumber",
        "version": "db get hw.board.iopVersion",
        "uci_hostname": "uci get system.@system[0].hostname",
    }

    def identify(self, text: str) -> float:
        return keyword_confidence(text, ("inteno", "iopsys"), 0.9)

    def describe(self, raw: dict[str, str], info: DeviceInfo) -> None:
        info.hostname = first_match(r"^(\S+)$", raw.get("uci_hostname", "").strip()) or info.hostname
        info.model = first_match(r"^(\S+)", raw.get("model", "").strip())
        info.serial_number = first_match(r"^(\S+)", raw.get("serial", "").strip())
        info.firmware_version = first_match(r"^(\S+)", raw.get("version", "").strip())
