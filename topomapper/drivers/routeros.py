"""MikroTik RouterOS driver (exec channel, ``print terse`` output)."""

from __future__ import annotations

import ipaddress
import re
from typing import Callable, Optional

from topomapper.drivers._parsing import IPV4_RE, decode_mikrotik_string, first_match, format_vlan, parse_terse
from topomapper.drivers.base import BaseDriver, FetchContext, LogFn, keyword_confidence
from topomapper.drivers.registry import register_driver
from topomapper.models import DeviceInfo, DhcpLeaseInfo, InterfaceInfo, LogLevel, NeighborInfo, NeighborSource
from topomapper.session.transport import BaseTransport

PROBE_COMMAND = "/system resource print"

# Keys of the raw output dict handed to RouterOSParser.
FETCH_COMMANDS: dict[str, str] = {
    "identity": "/system identity print",
    "resource": "/system resource print",
    "routerboard": "/system routerboard print",
    "addresses": "/ip address print terse",
    "interfaces": "/interface print terse",
    "arp": "/ip arp print terse",
    "bridge_hosts": "/interface bridge host print terse",
    "default_route": "/ip route print terse where dst-address=0.0.0.0/0 active=yes",
    "bridge_ports": "/interface bridge port print terse",
    "dhcp_servers": "/ip dhcp-server print terse",
    "bridge_vlans": "/interface bridge vlan print terse",
    "vlan_interfaces": "/interface vlan print terse",
    "dns_static": "/ip dns static print terse",
    "ip_neighbors": "/ip neighbor print terse",
    "dhcp_leases": "/ip dhcp-server lease print terse",
}

PHYSICAL_TYPES = ("ether", "ethernet", "sfp", "sfp-sfpplus", "combo", "wlan", "wifi", "wifiwave2", "lte")
MAX_VLAN_DEPTH = 10
MAX_PING_REFRESH = 30
SCAN_PREFIX_LIMIT = 24
IP_SCAN_DURATION = 3

_LOCAL_FLAG = re.compile(r"^\s*\d+\s+\S*L")
_DNS_SUFFIX = re.compile(r"\.(local|lan|home|internal|localdomain)$", re.IGNORECASE)

RefreshFn = Callable[[list[str]], str]


def scan_targets(address_output: str) -> list[tuple[str, str]]:
    """``(interface, network/cidr)`` pairs for ``/tool ip-scan``, no wider than /24."""
    targets: list[tuple[str, str]] = []
    for row in parse_terse(address_output, required="address"):
        iface = row.get("interface")
        if not iface or "/" not in row["address"]:
            continue
        try:
            iface_addr = ipaddress.IPv4Interface(row["address"])
        except ValueError:
            continue
        prefix = max(iface_addr.network.prefixlen, SCAN_PREFIX_LIMIT)
        network = ipaddress.IPv4Network(f"{iface_addr.ip}/{prefix}", strict=False)
        target = (iface, str(network))
        if target not in targets:
            targets.append(target)
    return targets


class RouterOSParser:
    """Turn the raw outputs of ``FETCH_COMMANDS`` into a ``DeviceInfo``."""

    def __init__(self, raw: dict[str, str], log: Optional[LogFn] = None):
        self.raw = {key: raw.get(key, "") or "" for key in FETCH_COMMANDS}
        self.log = log or (lambda level, message: None)

        self.interface_types: dict[str, str] = {}
        self.bridges: set[str] = set()
        self.bridge_port_of: dict[str, str] = {}
        self.port_pvid: dict[str, str] = {}
        self.port_tagged: dict[str, list[str]] = {}
        self.vlan_parent: dict[str, str] = {}
        self.vlan_id_of: dict[str, str] = {}
        self.vlan_comment: dict[str, str] = {}
        self.parent_vlan_ids: dict[str, list[str]] = {}
        self.dhcp_server_iface: dict[str, str] = {}
        self.dns_names: dict[str, str] = {}

        self._index_interfaces()
        self._index_bridge_ports()
        self._index_bridge_vlans()
        self._index_vlan_interfaces()
        self._index_dhcp_servers()
        self._index_dns_static()

    # ── indexes ───────────────────────────────────────────────────────

    def _index_interfaces(self) -> None:
        for row in parse_terse(self.raw["interfaces"], required="name"):
            if_type = row.get("type", "")
            self.interface_types[row["name"]] = if_type
            if if_type == "bridge":
                self.bridges.add(row["name"])

    def _index_bridge_ports(self) -> None:
        for row in parse_terse(self.raw["bridge_ports"], required="interface"):
            if "bridge" not in row:
                continue
            self.bridge_port_of[row["interface"]] = row["bridge"]
            pvid = row.get("pvid")
            if pvid and pvid.isdigit() and pvid != "1":
                self.port_pvid[row["interface"]] = pvid

    def _index_bridge_vlans(self) -> None:
        for row in parse_terse(self.raw["bridge_vlans"], required="vlan-ids"):
            vlan_id = first_match(r"^(\d+)", row["vlan-ids"])
            tagged = row.get("tagged", "")
            if not vlan_id or not tagged:
                continue
            for port in tagged.split(","):
                self.port_tagged.setdefault(port, []).append(vlan_id)

    def _index_vlan_interfaces(self) -> None:
        for row in parse_terse(self.raw["vlan_interfaces"], required="name"):
            parent = row.get("interface")
            if not parent:
                continue
            name = row["name"]
            self.vlan_parent[name] = parent
            vlan_id = row.get("vlan-id")
            if vlan_id and vlan_id.isdigit():
                self.vlan_id_of[name] = vlan_id
                if row.get("comment"):
                    self.vlan_comment[vlan_id] = decode_mikrotik_string(row["comment"]) or ""
                self.parent_vlan_ids.setdefault(parent, []).append(vlan_id)

    def _index_dhcp_servers(self) -> None:
        for row in parse_terse(self.raw["dhcp_servers"], required="name"):
            if "interface" in row:
                self.dhcp_server_iface[row["name"]] = row["interface"]

    def _index_dns_static(self) -> None:
        for line in self.raw["dns_static"].splitlines():
            if "regexp=" in line or " X " in line or line.startswith("X "):
                continue
            rows = parse_terse(line, required="name")
            if not rows or "address" not in rows[0]:
                continue
            row = rows[0]
            address = first_match(IPV4_RE, row["address"])
            if not address:
                continue
            name = decode_mikrotik_string(row["name"]) or ""
            self.dns_names[address] = _DNS_SUFFIX.sub("", name)
        if self.dns_names:
            self.log(LogLevel.INFO, f"Found {len(self.dns_names)} DNS static entries for hostname resolution")

    # ── helpers ───────────────────────────────────────────────────────

    def is_physical(self, name: str) -> bool:
        if_type = self.interface_types.get(name, "")
        return any(if_type.startswith(t) or name.startswith(t) for t in PHYSICAL_TYPES)

    def resolve_physical_port(self, name: str) -> str:
        """Walk VLAN parents down to a physical port; a bridge is returned as-is."""
        current = name
        for _ in range(MAX_VLAN_DEPTH):
            if self.is_physical(current):
                return current
            parent = self.vlan_parent.get(current)
            if parent:
                current = parent
                continue
            break
        return current

    def _vlans_for_port(self, name: str) -> Optional[str]:
        tagged = self.port_tagged.get(name, []) + self.parent_vlan_ids.get(name, [])
        return format_vlan(self.port_pvid.get(name), tagged, self.vlan_comment)

    def _bridge_host_rows(self, output: str) -> list[dict[str, str]]:
        rows = []
        for line in output.splitlines():
            parsed = parse_terse(line, required="mac-address")
            if not parsed or parsed[0].get("local") == "true" or _LOCAL_FLAG.match(line):
                continue
            rows.append(parsed[0])
        return rows

    # ── device fields ─────────────────────────────────────────────────

    def hostname(self) -> Optional[str]:
        return decode_mikrotik_string(first_match(r"name:\s*(.+)", self.raw["identity"]))

    def model(self) -> Optional[str]:
        return first_match(r"board-name:\s*(.+)", self.raw["resource"])

    def firmware_version(self) -> Optional[str]:
        version = first_match(r"version:\s*(\S+)", self.raw["resource"])
        return f"RouterOS {version}" if version else None

    def serial_number(self) -> Optional[str]:
        return first_match(r"serial-number:\s*(\S+)", self.raw["routerboard"])

    def interfaces(self) -> list[InterfaceInfo]:
        ip_by_iface: dict[str, str] = {}
        for row in parse_terse(self.raw["addresses"], required="address"):
            iface = row.get("interface")
            address = first_match(IPV4_RE, row["address"])
            if iface and address and iface not in ip_by_iface:
                ip_by_iface[iface] = address

        result = []
        for row in parse_terse(self.raw["interfaces"], required="name"):
            name = row["name"]
            result.append(
                InterfaceInfo(
                    name=name,
                    mac=row.get("mac-address") or None,
                    ip=ip_by_iface.get(name),
                    bridge=self.bridge_port_of.get(name),
                    vlan=self._vlans_for_port(name),
                    comment=decode_mikrotik_string(row.get("comment")) or None,
                    link_up="R" in row["_flags"],
                )
            )
        return result

    def dhcp_leases(self) -> list[DhcpLeaseInfo]:
        leases = []
        for row in parse_terse(self.raw["dhcp_leases"], required="mac-address"):
            ip = first_match(IPV4_RE, row.get("address", ""))
            hostname = decode_mikrotik_string(row.get("host-name")) or (self.dns_names.get(ip) if ip else None)
            leases.append(
                DhcpLeaseInfo(
                    mac=row["mac-address"].upper(),
                    ip=ip,
                    hostname=hostname or None,
                    comment=decode_mikrotik_string(row.get("comment")) or None,
                )
            )
        return leases

    # ── neighbours ────────────────────────────────────────────────────

    def neighbors(self, refresh: Optional[RefreshFn] = None) -> list[NeighborInfo]:
        """Merge DHCP, ARP, bridge-host and MNDP tables into one neighbour list.

        ``refresh`` is called with the IPs of neighbours still pinned to a
        bridge; it should ping them and return a fresh bridge host table.
        """
        port_of: dict[str, str] = {}
        vlans_of: dict[str, list[str]] = {}
        host_rows = self._bridge_host_rows(self.raw["bridge_hosts"])
        for row in host_rows:
            raw_iface = row.get("on-interface") or row.get("interface")
            if not raw_iface:
                continue
            mac = row["mac-address"].upper()
            vlan_id = self.vlan_id_of.get(raw_iface)
            if vlan_id and vlan_id not in vlans_of.setdefault(mac, []):
                vlans_of[mac].append(vlan_id)
            port = self.resolve_physical_port(raw_iface)
            if port not in self.bridges:
                port_of[mac] = port

        found: dict[str, NeighborInfo] = {}

        leases = parse_terse(self.raw["dhcp_leases"], required="mac-address")
        for lease, row in zip(self.dhcp_leases(), leases):
            if row.get("status") != "bound":
                continue
            iface = port_of.get(lease.mac)
            if iface is None:
                server = row.get("server")
                iface = self.dhcp_server_iface.get(server, server) if server else "unknown"
            found[lease.mac] = NeighborInfo(
                mac=lease.mac,
                ip=lease.ip,
                hostname=lease.hostname,
                interface=iface or "unknown",
                source=NeighborSource.DHCP,
                vlans=vlans_of.get(lease.mac, []),
            )

        for row in parse_terse(self.raw["arp"], required="mac-address"):
            mac = row["mac-address"].upper()
            if mac in found:
                continue
            iface = row.get("interface", "unknown")
            if mac in port_of:
                iface = port_of[mac]
            elif iface in self.bridges or iface in self.vlan_parent:
                resolved = self.resolve_physical_port(iface)
                if resolved not in self.bridges:
                    iface = resolved
            ip = first_match(IPV4_RE, row.get("address", ""))
            found[mac] = NeighborInfo(
                mac=mac,
                ip=ip,
                hostname=self.dns_names.get(ip) if ip else None,
                interface=iface,
                source=NeighborSource.ARP,
                vlans=vlans_of.get(mac, []),
            )

        for row in host_rows:
            raw_iface = row.get("on-interface") or row.get("interface")
            if not raw_iface:
                continue
            port = self.resolve_physical_port(raw_iface)
            if port in self.bridges:
                continue
            mac = row["mac-address"].upper()
            existing = found.get(mac)
            if existing is None:
                found[mac] = NeighborInfo(
                    mac=mac, interface=port, source=NeighborSource.BRIDGE_HOST, vlans=vlans_of.get(mac, [])
                )
                continue
            if existing.interface in self.bridges or existing.interface == "unknown":
                existing.interface = port
            if not existing.vlans and mac in vlans_of:
                existing.vlans = vlans_of[mac]

        if refresh is not None:
            self._refresh_ports(list(found.values()), refresh)
        self._merge_discovery(found, vlans_of)
        return list(found.values())

    def _refresh_ports(self, neighbors: list[NeighborInfo], refresh: RefreshFn) -> None:
        unresolved = [n for n in neighbors if n.ip and n.interface in self.bridges]
        if not unresolved:
            return
        ips = [n.ip for n in unresolved[:MAX_PING_REFRESH] if n.ip]
        self.log(LogLevel.INFO, f"Pinging {len(ips)} unresolved devices to refresh MAC table...")
        by_mac = {n.mac: n for n in neighbors}
        resolved = 0
        for row in self._bridge_host_rows(refresh(ips)):
            on_iface = row.get("on-interface")
            neighbor = by_mac.get(row["mac-address"].upper())
            if not on_iface or neighbor is None or neighbor.interface not in self.bridges:
                continue
            port = self.resolve_physical_port(on_iface)
            if port not in self.bridges:
                neighbor.interface = port
                resolved += 1
        if resolved:
            self.log(LogLevel.SUCCESS, f"Resolved {resolved} MAC addresses to physical ports")

    def _merge_discovery(self, found: dict[str, NeighborInfo], vlans_of: dict[str, list[str]]) -> None:
        enriched = added = 0
        for row in parse_terse(self.raw["ip_neighbors"], required="mac-address"):
            mac = row["mac-address"].upper()
            identity = (decode_mikrotik_string(row.get("identity")) or "").strip() or None
            ip = first_match(IPV4_RE, row.get("address", ""))
            version = row.get("version") or None
            board = row.get("board") or None
            existing = found.get(mac)
            if existing is not None:
                if not existing.hostname and identity:
                    existing.hostname = identity
                    enriched += 1
                existing.ip = existing.ip or ip
                existing.version = version
                existing.model = board
                continue
            found[mac] = NeighborInfo(
                mac=mac,
                ip=ip,
                hostname=identity,
                interface=row.get("interface", "unknown"),
                source=NeighborSource.MNDP,
                version=version,
                model=board,
                vlans=vlans_of.get(mac, []),
            )
            added += 1
        if enriched or added:
            self.log(LogLevel.INFO, f"MNDP/CDP/LLDP: enriched {enriched} existing neighbors, added {added} new neighbors")

    def own_upstream_interface(self) -> Optional[str]:
        """Port on which this device learned its default gateway's MAC."""
        gateway = first_match(r"gateway=(\d+\.\d+\.\d+\.\d+)", self.raw["default_route"])
        if not gateway:
            return None
        gateway_mac = None
        for row in parse_terse(self.raw["arp"], required="mac-address"):
            if first_match(IPV4_RE, row.get("address", "")) == gateway:
                gateway_mac = row["mac-address"].upper()
                break
        if not gateway_mac:
            return None
        for row in parse_terse(self.raw["bridge_hosts"], required="mac-address"):
            if row["mac-address"].upper() == gateway_mac and row.get("on-interface"):
                return row["on-interface"]
        return None

    def parse(self, refresh: Optional[RefreshFn] = None) -> DeviceInfo:
        neighbors = self.neighbors(refresh)
        upstream = self.own_upstream_interface()
        if upstream:
            neighbors = [n for n in neighbors if n.interface != upstream]
        return DeviceInfo(
            hostname=self.hostname(),
            model=self.model(),
            serial_number=self.serial_number(),
            firmware_version=self.firmware_version(),
            interfaces=self.interfaces(),
            neighbors=neighbors,
            dhcp_leases=self.dhcp_leases(),
            own_upstream_interface=upstream,
        )


@register_driver
class RouterOSDriver(BaseDriver):
    name = "mikrotik-routeros"
    vendor = "MikroTik"
    hint_confidence = 0.5

    def identify(self, text: str) -> float:
        return keyword_confidence(text, ("mikrotik", "routeros", "rosssh"), 0.9)

    def fetch(self, transport: BaseTransport, ctx: FetchContext) -> DeviceInfo:
        addresses = self.exec_quiet(transport, FETCH_COMMANDS["addresses"], ctx)
        for iface, subnet in scan_targets(addresses):
            ctx.log(LogLevel.INFO, f"IP scanning {subnet} on {iface}...")
            self.exec_quiet(
                transport,
                f"/tool ip-scan address-range={subnet} interface={iface} duration={IP_SCAN_DURATION}",
                ctx,
                timeout=max(ctx.command_timeout, IP_SCAN_DURATION + 7),
            )

        raw = {key: self.exec_quiet(transport, command, ctx) for key, command in FETCH_COMMANDS.items()}

        def refresh(ips: list[str]) -> str:
            for ip in ips:
                self.exec_quiet(transport, f"/ping {ip} count=1", ctx, timeout=3)
            return self.exec_quiet(transport, FETCH_COMMANDS["bridge_hosts"], ctx)

        return RouterOSParser(raw, log=ctx.log).parse(refresh=refresh)


@register_driver
class SwOSDriver(RouterOSDriver):
    """MikroTik switches running SwOS; same command set as RouterOS."""

    name = "mikrotik-swos"
    hint_confidence = 0.0

    def identify(self, text: str) -> float:
        return keyword_confidence(text, ("swos",), 0.95)
