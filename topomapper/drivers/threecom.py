"""3Com Baseline switches (Comware user view, paged output).

The user view only offers ``summary``; interfaces and the MAC table are read
over SNMP instead.
"""

from __future__ import annotations

import re
from typing import Optional

from topomapper.drivers._parsing import first_match
from topomapper.drivers.base import BaseDriver, FetchContext, keyword_confidence
from topomapper.drivers.registry import register_driver
from topomapper.enrichment import snmp
from topomapper.models import DeviceInfo, LogLevel
from topomapper.session.terminal import ShellProfile, strip_control_chars
from topomapper.session.transport import BaseTransport

COMMANDS = ["summary"]

_MODEL = re.compile(r"3Com\s+((?:Baseline\s+)?Switch\s+[^\n]+?)\s+Software", re.IGNORECASE)
_VERSION = re.compile(r"Software Version\s+(\S+(?:\s+Release\s+\S+)?)", re.IGNORECASE)
_HW_VERSION = re.compile(r"Hardware Version is\s+(\S+)", re.IGNORECASE)


def hostname_from_model(model: Optional[str]) -> Optional[str]:
    """``Baseline Switch 2928-SFP Plus`` -> ``2928-SFP-Plus``."""
    if not model:
        return None
    short = first_match(r"Switch\s+(.+)", model, re.IGNORECASE) or model
    return re.sub(r"\s+", "-", short)


def parse_summary(output: str) -> DeviceInfo:
    model = first_match(_MODEL, output)
    hw_version = first_match(_HW_VERSION, output)
    return DeviceInfo(
        hostname=hostname_from_model(model),
        model=model,
        firmware_version=first_match(_VERSION, output),
        # no serial in user view; the hardware revision is the closest identifier
        serial_number=f"HW:{hw_version}" if hw_version else None,
    )


@register_driver
class ThreeComDriver(BaseDriver):
    name = "3com"
    vendor = "3Com"
    uses_shell = True
    hint_confidence = 0.6
    profile = ShellProfile(
        ready=re.compile(r"<[^>]+>\s*$"),
        pager=re.compile(r"-+ More -+"),
        exit_command="quit",
        term="vt100",
        width=132,
        height=24,
    )

    def identify(self, text: str) -> float:
        return keyword_confidence(text, ("3com",), 0.9)

    def fetch(self, transport: BaseTransport, ctx: FetchContext) -> DeviceInfo:
        (summary,) = (strip_control_chars(o) for o in self.run_shell(transport, COMMANDS, ctx))
        info = parse_summary(summary)
        ctx.log(LogLevel.INFO, f"{ctx.host}: Parsed hostname={info.hostname}, model={info.model}, version={info.firmware_version}")

        if not (ctx.enable_snmp and ctx.host):
            return info
        ctx.log(LogLevel.INFO, f"Querying SNMP on {ctx.host}...")
        info.interfaces, info.neighbors = snmp.query_bridge(ctx.host, ctx.snmp_community, ctx.snmp_timeout)
        if not info.interfaces and not info.neighbors:
            ctx.log(LogLevel.WARN, f"{ctx.host}: SNMP query failed, returning empty interfaces/neighbors")
        else:
            ctx.log(
                LogLevel.INFO,
                f"{ctx.host}: Found {len(info.interfaces)} Ethernet interfaces and {len(info.neighbors)} neighbor MACs via SNMP",
            )
        return info
