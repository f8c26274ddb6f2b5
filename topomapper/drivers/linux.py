"""Exec-channel drivers for Linux-based devices (EdgeOS, UniFi, OpenWrt/iopsys).

All of them ship iproute2, so interfaces and neighbours come from the same
``ip`` / ``bridge`` commands; subclasses only say how to read the device's
identity.
"""

from __future__ import annotations

import re
from typing import Optional

from topomapper.drivers._parsing import IPV4_RE, first_match, normalize_mac, sanitize_hostname
from topomapper.drivers.base import BaseDriver, FetchContext, merge_neighbors
from topomapper.models import DeviceInfo, DhcpLeaseInfo, InterfaceInfo, NeighborInfo, NeighborSource
from topomapper.session.transport import BaseTransport

IPROUTE_COMMANDS: dict[str, str] = {
    "hostname": "hostname",
    "links": "ip -o link show",
    "addresses": "ip -o -4 addr show",
    "neighbors": "ip neigh show",
    "fdb": "bridge fdb show",
    "default_route": "ip route show default",
    "leases": "cat /tmp/dhcp.leases",
}

# 2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 ... state UP ... link/ether aa:bb:..
_LINK_LINE = re.compile(r"^\d+:\s+([^:@\s]+)(?:@\S+)?:\s+<([^>]*)>(.*)$")
_ADDR_LINE = re.compile(r"^\d+:\s+(\S+)\s+inet\s+(\d+\.\d+\.\d+\.\d+)/\d+")
_NEIGH_LINE = re.compile(r"^(\d+\.\d+\.\d+\.\d+)\s+dev\s+(\S+)\s+lladdr\s+(\S+)(.*)$")
_FDB_LINE = re.compile(r"^(\S+)\s+dev\s+(\S+)(.*)$")

SKIP_LINKS = ("lo",)
_MULTICAST_PREFIXES = ("01:00:5E", "33:33", "FF:FF:FF:FF:FF:FF")


def parse_links(output: str) -> list[InterfaceInfo]:
    interfaces = []
    for line in output.splitlines():
        m = _LINK_LINE.match(line.strip())
        if not m or m.group(1) in SKIP_LINKS:
            continue
        name, flags, rest = m.groups()
        interfaces.append(
            InterfaceInfo(
                name=name,
                mac=normalize_mac(first_match(r"link/ether\s+(\S+)", rest)),
                bridge=first_match(r"\bmaster\s+(\S+)", rest),
                link_up="LOWER_UP" in flags.split(","),
            )
        )
    return interfaces


def parse_addresses(output: str) -> dict[str, str]:
    """First IPv4 address per interface."""
    addresses: dict[str, str] = {}
    for line in output.splitlines():
        m = _ADDR_LINE.match(line.strip())
        if m and m.group(1) not in addresses:
            addresses[m.group(1)] = m.group(2)
    return addresses


def parse_fdb(output: str) -> dict[str, str]:
    """Learned (non-local, unicast) MAC -> bridge port."""
    ports: dict[str, str] = {}
    for line in output.splitlines():
        m = _FDB_LINE.match(line.strip())
        if not m:
            continue
        mac = normalize_mac(m.group(1))
        rest = m.group(3)
        if mac is None or "permanent" in rest or " self" in rest or mac.startswith(_MULTICAST_PREFIXES):
            continue
        ports.setdefault(mac, m.group(2))
    return ports


def parse_dnsmasq_leases(output: str) -> list[DhcpLeaseInfo]:
    """``/tmp/dhcp.leases``: ``expiry mac ip hostname client-id``."""
    leases = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        mac = normalize_mac(parts[1])
        if mac is None or not IPV4_RE.fullmatch(parts[2]):
            continue
        leases.append(DhcpLeaseInfo(mac=mac, ip=parts[2], hostname=None if parts[3] == "*" else parts[3]))
    return leases


class LinuxParser:
    """Combine iproute2 output into interfaces, neighbours and the uplink port."""

    def __init__(self, raw: dict[str, str]):
        self.raw = {key: raw.get(key, "") or "" for key in IPROUTE_COMMANDS}
        self.fdb = parse_fdb(self.raw["fdb"])

    def interfaces(self) -> list[InterfaceInfo]:
        addresses = parse_addresses(self.raw["addresses"])
        interfaces = parse_links(self.raw["links"])
        for iface in interfaces:
            iface.ip = addresses.get(iface.name)
        return interfaces

    def own_macs(self) -> set[str]:
        return {i.mac for i in parse_links(self.raw["links"]) if i.mac}

    def dhcp_leases(self) -> list[DhcpLeaseInfo]:
        return parse_dnsmasq_leases(self.raw["leases"])

    def neighbors(self) -> list[NeighborInfo]:
        own = self.own_macs()
        found: list[NeighborInfo] = []
        arp_dev: dict[str, str] = {}

        for line in self.raw["neighbors"].splitlines():
            m = _NEIGH_LINE.match(line.strip())
            if not m or "FAILED" in m.group(4) or "INCOMPLETE" in m.group(4):
                continue
            mac = normalize_mac(m.group(3))
            if mac is None or mac in own:
                continue
            arp_dev[mac] = m.group(2)
            found.append(
                NeighborInfo(mac=mac, ip=m.group(1), interface=self.fdb.get(mac, m.group(2)), source=NeighborSource.ARP)
            )

        for lease in self.dhcp_leases():
            if lease.mac in own:
                continue
            port = self.fdb.get(lease.mac) or arp_dev.get(lease.mac) or "unknown"
            found.append(
                NeighborInfo(
                    mac=lease.mac, ip=lease.ip, hostname=lease.hostname, interface=port, source=NeighborSource.DHCP
                )
            )

        for mac, port in self.fdb.items():
            if mac not in own:
                found.append(NeighborInfo(mac=mac, interface=port, source=NeighborSource.BRIDGE_HOST))

        merged = merge_neighbors(found)
        # a DHCP report has no port of its own; take the bridge port when known
        for n in merged:
            if n.mac in self.fdb:
                n.interface = self.fdb[n.mac]
        return merged

    def own_upstream_interface(self) -> Optional[str]:
        gateway = first_match(r"default via (\d+\.\d+\.\d+\.\d+)", self.raw["default_route"])
        if not gateway:
            return None
        for line in self.raw["neighbors"].splitlines():
            m = _NEIGH_LINE.match(line.strip())
            if m and m.group(1) == gateway:
                mac = normalize_mac(m.group(3))
                if mac:
                    return self.fdb.get(mac, m.group(2))
        return None


class LinuxDriver(BaseDriver):
    """Base for iproute2 devices. Subclasses add identity commands and ``describe``."""

    identity_commands: dict[str, str] = {}

    def describe(self, raw: dict[str, str], info: DeviceInfo) -> None:
        """Fill hostname/model/serial/firmware from ``raw`` into ``info``."""

    def fetch(self, transport: BaseTransport, ctx: FetchContext) -> DeviceInfo:
        commands = {**IPROUTE_COMMANDS, **self.identity_commands}
        raw = {key: self.exec_quiet(transport, command, ctx) for key, command in commands.items()}
        parser = LinuxParser(raw)
        upstream = parser.own_upstream_interface()
        neighbors = parser.neighbors()
        info = DeviceInfo(
            hostname=sanitize_hostname(raw["hostname"]),
            interfaces=parser.interfaces(),
            neighbors=[n for n in neighbors if n.interface != upstream] if upstream else neighbors,
            dhcp_leases=parser.dhcp_leases(),
            own_upstream_interface=upstream,
        )
        self.describe(raw, info)
        return info
