"""SSH transport for device sessions (paramiko)."""

from __future__ import annotations

import socket
import time
from abc import ABC, abstractmethod
from types import TracebackType
from typing import Any, Optional, Self

import paramiko
from loguru import logger

from topomapper.exceptions import AuthenticationFailed, CommandTimeout, ConnectTimeout, TransportError
from topomapper.session.terminal import ShellProfile, TerminalSession

DEFAULT_TIMEOUT = 15
DEFAULT_COMMAND_TIMEOUT = 10


class BaseTransport(ABC):
    """Authenticated connection to one device."""

    def __init__(self, host: str, username: str, password: str, port: int = 22):
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.banner = ""

    @abstractmethod
    def connect(self) -> None:
        """Establish the connection and capture the banner."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the connection."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is active."""

    @abstractmethod
    def exec_command(self, command: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
        """Run one command on an exec channel and return stdout+stderr."""

    @abstractmethod
    def open_shell(self, profile: ShellProfile) -> TerminalSession:
        """Open an interactive PTY shell driven by ``profile``."""

    def open_tunnel(self, host: str, port: int, timeout: Optional[float] = None) -> Any:
        """Open a TCP channel from this device to ``host:port``.

        Raises:
            TransportError: Forwarding is refused or the target does not answer.
        """
        raise TransportError(f"{self.host}: TCP forwarding not supported")

    def __enter__(self) -> Self:
        self.connect()
        return self

    def __exit__(
        self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: TracebackType | None
    ) -> None:
        self.disconnect()


class SSHTransport(BaseTransport):
    """paramiko SSH client with banner capture and error mapping."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 22,
        timeout: float = DEFAULT_TIMEOUT,
        sock: Any = None,
    ):
        super().__init__(host, username, password, port)
        self.timeout = timeout
        self.sock = sock
        self._client: paramiko.SSHClient | None = None

    def connect(self) -> None:
        self._client = paramiko.SSHClient()
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            self._client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                look_for_keys=False,
                allow_agent=False,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                sock=self.sock,
            )
        except paramiko.AuthenticationException as e:
            self.disconnect()
            raise AuthenticationFailed(f"{self.host}: SSH authentication failed for {self.username}: {e}") from e
        except (socket.timeout, TimeoutError) as e:
            self.disconnect()
            raise ConnectTimeout(f"{self.host}: no SSH session within {self.timeout}s") from e
        except (paramiko.SSHException, OSError) as e:
            self.disconnect()
            raise TransportError(f"{self.host}: SSH connection failed: {e}") from e

        self.banner = self._read_banner()
        logger.debug(f"SSH connected to {self.host} as {self.username}")

    def _read_banner(self) -> str:
        assert self._client is not None
        transport = self._client.get_transport()
        if transport is None:
            return ""
        parts = [transport.remote_version or ""]
        auth_banner = transport.get_banner()
        if auth_banner:
            parts.append(auth_banner.decode("utf-8", errors="replace"))
        return "\n".join(p for p in parts if p)

    def disconnect(self) -> None:
        if self._client:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"{self.host}: ignoring error on close: {e}")
            self._client = None

    def is_connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def exec_command(self, command: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
        self._ensure_connected()
        assert self._client is not None
        try:
            _, stdout, stderr = self._client.exec_command(command, timeout=timeout)
            output = stdout.read() + stderr.read()
        except (socket.timeout, TimeoutError) as e:
            raise CommandTimeout(f"{self.host}: '{command}' timed out after {timeout}s") from e
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"{self.host}: exec '{command}' failed: {e}") from e
        return output.decode("utf-8", errors="replace")

    def open_shell(self, profile: ShellProfile) -> TerminalSession:
        self._ensure_connected()
        assert self._client is not None
        try:
            channel = self._client.invoke_shell(term=profile.term, width=profile.width, height=profile.height)
        except paramiko.SSHException as e:
            raise TransportError(f"{self.host}: cannot open shell: {e}") from e
        channel.settimeout(self.timeout)
        return TerminalSession(channel, profile, host=self.host)

    def open_tunnel(self, host: str, port: int, timeout: Optional[float] = None) -> paramiko.Channel:
        self._ensure_connected()
        assert self._client is not None
        transport = self._client.get_transport()
        assert transport is not None
        try:
            return transport.open_channel(
                "direct-tcpip", (host, port), ("127.0.0.1", 0), timeout=timeout or self.timeout
            )
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"{self.host}: tunnel to {host}:{port} failed: {e}") from e

    def _ensure_connected(self) -> None:
        if not self.is_connected():
            raise TransportError(f"{self.host}: not connected. Call connect() first.")


def open_session(
    host: str,
    username: str,
    password: str,
    port: int = 22,
    timeout: float = DEFAULT_TIMEOUT,
    retries: int = 2,
    retry_delay: float = 0.5,
    jump_host: Optional[BaseTransport] = None,
) -> SSHTransport:
    """Connect with retries for flaky devices.

    Authentication failures are raised immediately; a wrong password does not
    get better by trying again. With ``jump_host`` the session runs through a
    TCP channel opened on that device; when it refuses the channel the
    connection is made directly.
    """
    attempt = 0
    while True:
        sock = _tunnel(jump_host, host, port, timeout) if jump_host is not None else None
        transport = SSHTransport(host, username, password, port=port, timeout=timeout, sock=sock)
        try:
            transport.connect()
            return transport
        except AuthenticationFailed:
            raise
        except (ConnectTimeout, TransportError) as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.debug(f"{host}: connect attempt {attempt} failed ({e}), retrying")
            time.sleep(retry_delay)


def _tunnel(jump_host: BaseTransport, host: str, port: int, timeout: float) -> Any:
    try:
        return jump_host.open_tunnel(host, port, timeout=timeout)
    except TransportError as e:
        logger.debug(f"{host}: no tunnel through {jump_host.host} ({e}), connecting directly")
        return None
