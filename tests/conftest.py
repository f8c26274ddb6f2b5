"""Shared fixtures for the topomapper test suite."""

from __future__ import annotations

from collections import deque
from typing import Optional
from unittest.mock import MagicMock

import pytest

from topomapper.exceptions import AuthenticationFailed, ConnectTimeout, TransportError
from topomapper.models import Credential, DeviceInfo, Network
from topomapper.session.terminal import ShellProfile, TerminalSession
from topomapper.session.transport import BaseTransport
from topomapper.settings import CrawlSettings
from topomapper.store import MemoryStore

# ── shell and transport fakes ─────────────────────────────────────────


def shell_reply(command: str, output: str, prompt: str) -> str:
    """What a device prints after ``command``: echo, output, next prompt."""
    body = f"{output}\r\n" if output else ""
    return f"{command}\r\n{body}{prompt}"


class ScriptedChannel:
    """Paramiko-channel stand-in that answers sent lines from a script.

    ``replies`` maps a sent line (without newline) to the text the device
    prints in response. Lines with no reply are recorded and ignored.
    """

    def __init__(self, greeting: str = "", replies: Optional[dict[str, str]] = None):
        self.replies = replies or {}
        self.sent: list[str] = []
        self.closed = False
        self._pending: deque[bytes] = deque()
        if greeting:
            self._pending.append(greeting.encode())

    def send(self, data: bytes) -> int:
        text = data.decode()
        self.sent.append(text)
        reply = self.replies.get(text.rstrip("\n"))
        if reply is not None and text.endswith("\n"):
            self._pending.append(reply.encode())
        return len(data)

    def recv_ready(self) -> bool:
        return bool(self._pending)

    def recv(self, size: int) -> bytes:
        return self._pending.popleft() if self._pending else b""

    def exit_status_ready(self) -> bool:
        return False

    def settimeout(self, timeout: float) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeTransport(BaseTransport):
    """In-memory transport: exec answers from a dict, shells from a ScriptedChannel."""

    def __init__(
        self,
        host: str = "10.0.0.1",
        username: str = "admin",
        password: str = "secret",
        banner: str = "",
        exec_responses: Optional[dict[str, str]] = None,
        channel: Optional[ScriptedChannel] = None,
        tunnel_ports: Optional[dict[str, list[int]]] = None,
    ):
        super().__init__(host, username, password)
        self.banner = banner
        self.exec_responses = exec_responses or {}
        self.channel = channel
        self.tunnel_ports = tunnel_ports
        self.tunnels: list[tuple[str, int]] = []
        self.commands: list[str] = []
        self.connected = True

    def connect(self) -> None:
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def exec_command(self, command: str, timeout: float = 10) -> str:
        self.commands.append(command)
        return self.exec_responses.get(command, "")

    def open_shell(self, profile: ShellProfile) -> TerminalSession:
        assert self.channel is not None, "no shell scripted for this transport"
        return TerminalSession(self.channel, profile, host=self.host)

    def open_tunnel(self, host: str, port: int, timeout: Optional[float] = None) -> ScriptedChannel:
        """Forwards to ports listed in ``tunnel_ports``; ``None`` refuses all forwarding."""
        if self.tunnel_ports is None:
            raise TransportError(f"{self.host}: administratively prohibited")
        if port not in self.tunnel_ports.get(host, []):
            raise TransportError(f"{self.host}: tunnel to {host}:{port} failed: connection refused")
        self.tunnels.append((host, port))
        return ScriptedChannel()


class FakeConnector:
    """Connector that accepts one username/password pair per host.

    Hosts missing from ``accounts`` time out. Every attempt is recorded as
    ``(host, username)``, and in ``jumps`` as ``(host, jump host address)``.
    ``tunnel_ports`` is handed to every transport it returns.
    """

    def __init__(
        self,
        accounts: dict[str, tuple[str, str]],
        banners: Optional[dict[str, str]] = None,
        tunnel_ports: Optional[dict[str, list[int]]] = None,
    ):
        self.accounts = accounts
        self.banners = banners or {}
        self.tunnel_ports = tunnel_ports
        self.attempts: list[tuple[str, str]] = []
        self.jumps: list[tuple[str, Optional[str]]] = []
        self.transports: list[FakeTransport] = []

    def __call__(
        self, host: str, username: str, password: str, jump_host: Optional[BaseTransport] = None, **kwargs
    ) -> FakeTransport:
        self.attempts.append((host, username))
        self.jumps.append((host, jump_host.host if jump_host else None))
        if host not in self.accounts:
            raise ConnectTimeout(f"{host}: no SSH session within 1s")
        if self.accounts[host] != (username, password):
            raise AuthenticationFailed(f"{host}: SSH authentication failed for {username}")
        transport = FakeTransport(
            host, username, password, banner=self.banners.get(host, ""), tunnel_ports=self.tunnel_ports
        )
        self.transports.append(transport)
        return transport

    def attempts_for(self, host: str) -> list[str]:
        return [user for h, user in self.attempts if h == host]


@pytest.fixture()
def mock_channel():
    """MagicMock shell channel for feeding a TerminalSession by hand."""
    channel = MagicMock()
    channel.closed = False
    channel.recv_ready.return_value = False
    channel.exit_status_ready.return_value = False
    return channel


@pytest.fixture()
def fake_transport():
    """Factory fixture returning a FakeTransport."""

    def _make(**kwargs):
        return FakeTransport(**kwargs)

    return _make


# ── records ───────────────────────────────────────────────────────────


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def make_network(store):
    """Factory fixture storing a Network with customizable fields."""

    def _make(**kwargs):
        defaults = {
            "name": "office",
            "root_ip": "10.0.0.1",
            "root_username": "admin",
            "root_password": "secret",
        }
        defaults.update(kwargs)
        return store.upsert(Network(**defaults))

    return _make


@pytest.fixture()
def make_credential(store):
    """Factory fixture storing a Credential (global unless network_id is given)."""

    def _make(username="guest", password="guest", **kwargs):
        return store.upsert(Credential(username=username, password=password, **kwargs))

    return _make


@pytest.fixture()
def crawl_settings():
    """Settings for in-process crawls: no multicast, no SNMP, no retries."""
    return CrawlSettings(workers=2, enable_mdns=False, enable_snmp=False, connect_retries=0, retry_delay=0)


@pytest.fixture()
def sample_device_info():
    """Factory fixture returning a DeviceInfo with customizable fields."""

    def _make(**kwargs):
        defaults = {
            "hostname": "core",
            "model": "RB4011",
            "serial_number": "HE0001",
            "firmware_version": "RouterOS 7.12",
        }
        defaults.update(kwargs)
        return DeviceInfo(**defaults)

    return _make
