"""TCP connect probe of management ports."""

from __future__ import annotations

import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable

from loguru import logger

from topomapper.exceptions import TransportError
from topomapper.settings import MANAGEMENT_PORTS

SSH_PORT = 22


def is_port_open(host: str, port: int, timeout: float = 3.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def probe_ports(host: str, ports: Iterable[int] = MANAGEMENT_PORTS, timeout: float = 3.0) -> list[int]:
    """Open ports of ``host`` among ``ports``, sorted."""
    ports = list(ports)
    if not ports:
        return []
    with ThreadPoolExecutor(max_workers=len(ports)) as executor:
        results = list(executor.map(lambda p: (p, is_port_open(host, p, timeout)), ports))
    open_ports = sorted(p for p, is_open in results if is_open)
    logger.debug(f"{host}: open management ports {open_ports}")
    return open_ports


def is_port_open_via(jump_host: Any, host: str, port: int, timeout: float = 3.0) -> bool:
    """Whether ``jump_host`` can open a TCP channel to ``host:port``."""
    try:
        channel = jump_host.open_tunnel(host, port, timeout=timeout)
    except TransportError:
        return False
    channel.close()
    return True


def probe_ports_via(
    jump_host: Any, host: str, ports: Iterable[int] = MANAGEMENT_PORTS, timeout: float = 3.0
) -> list[int]:
    """Like ``probe_ports``, but the connections are made by ``jump_host``."""
    ports = list(ports)
    if not ports:
        return []
    with ThreadPoolExecutor(max_workers=len(ports)) as executor:
        results = list(executor.map(lambda p: (p, is_port_open_via(jump_host, host, p, timeout)), ports))
    open_ports = sorted(p for p, is_open in results if is_open)
    logger.debug(f"{host}: open management ports via {jump_host.host} {open_ports}")
    return open_ports
