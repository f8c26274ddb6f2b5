"""Driver capability interface shared by all vendor plugins."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from loguru import logger

from topomapper.exceptions import CommandTimeout, TransportError
from topomapper.models import Credential, DeviceInfo, LogLevel, NeighborInfo
from topomapper.session.terminal import LoginStep, ShellProfile, Step
from topomapper.session.transport import BaseTransport

LogFn = Callable[[LogLevel, str], None]


def _log_to_logger(level: LogLevel, message: str) -> None:
    if level == LogLevel.ERROR:
        logger.error(message)
    elif level == LogLevel.WARN:
        logger.warning(message)
    else:
        logger.info(message)


@dataclass
class FetchContext:
    """Per-device inputs a driver needs besides the transport."""

    credential: Credential
    host: str = ""
    log: LogFn = _log_to_logger
    command_timeout: float = 10.0
    shell_timeout: float = 45.0
    web_fetch: bool = True
    snmp_community: str = "public"
    snmp_timeout: float = 3.0
    enable_snmp: bool = True


class BaseDriver(ABC):
    """One CLI dialect.

    ``identify`` scores banner/probe text; ``fetch`` runs the dialect's
    commands and normalises the result into ``DeviceInfo``. Shell drivers set
    ``profile`` and may override ``login_steps`` when the device wants a
    shell-level login after SSH authentication.
    """

    name: str = ""
    vendor: Optional[str] = None
    uses_shell: bool = False
    profile: Optional[ShellProfile] = None
    # Confidence when only the MAC OUI vendor points at this driver.
    hint_confidence: float = 0.0

    @abstractmethod
    def identify(self, text: str) -> float:
        """Return a confidence in [0, 1] that ``text`` comes from this dialect."""

    @abstractmethod
    def fetch(self, transport: BaseTransport, ctx: FetchContext) -> DeviceInfo:
        """Collect and parse device information."""

    def score(self, text: str, vendor_hint: Optional[str] = None) -> float:
        confidence = self.identify(text)
        if vendor_hint and self.vendor and vendor_hint.lower() == self.vendor.lower():
            confidence = max(confidence, self.hint_confidence)
        return confidence

    def login_steps(self, credential: Credential) -> list[LoginStep]:
        return []

    def run_shell(self, transport: BaseTransport, commands: Sequence[str], ctx: FetchContext) -> list[str]:
        """Run ``commands`` in one interactive shell and return their outputs."""
        if self.profile is None:
            raise TypeError(f"{self.name} has no shell profile")
        session = transport.open_shell(self.profile)
        ctx.log(LogLevel.INFO, f"{ctx.host}: Shell opened, running {len(commands)} commands")
        try:
            outputs = session.run_sequence(
                [Step(cmd) for cmd in commands],
                overall_timeout=ctx.shell_timeout,
                command_timeout=ctx.command_timeout,
                login_steps=self.login_steps(ctx.credential),
            )
        finally:
            session.close()
        if session.error is not None:
            ctx.log(LogLevel.WARN, f"{ctx.host}: {session.error}")
        return outputs

    def exec_quiet(self, transport: BaseTransport, command: str, ctx: FetchContext, timeout: float = 0) -> str:
        """Exec one command; a failing command yields "" unless the transport died."""
        try:
            return transport.exec_command(command, timeout=timeout or ctx.command_timeout)
        except CommandTimeout as e:
            logger.debug(f"{ctx.host}: {e}")
            return ""
        except TransportError as e:
            if not transport.is_connected():
                raise
            logger.debug(f"{ctx.host}: {e}")
            return ""


def keyword_confidence(text: str, keywords: Iterable[str], confidence: float) -> float:
    lowered = text.lower()
    return confidence if any(k in lowered for k in keywords) else 0.0


def merge_neighbors(neighbors: Iterable[NeighborInfo]) -> list[NeighborInfo]:
    """Collapse reports about the same MAC, keeping the most trusted one.

    Fields the winner lacks (ip, hostname, model, version, vlans) are filled
    from the other reports. First-seen order is kept.
    """
    merged: dict[str, NeighborInfo] = {}
    for n in neighbors:
        mac = n.mac.upper()
        current = merged.get(mac)
        if current is None:
            merged[mac] = n.model_copy(update={"mac": mac})
            continue
        winner, other = (n, current) if n.trust > current.trust else (current, n)
        merged[mac] = winner.model_copy(
            update={
                "mac": mac,
                "ip": winner.ip or other.ip,
                "hostname": winner.hostname or other.hostname,
                "model": winner.model or other.model,
                "version": winner.version or other.version,
                "vlans": winner.vlans or other.vlans,
            }
        )
    return list(merged.values())
