"""Topology tree assembled at read time from parent-interface links."""

from __future__ import annotations

from collections import Counter
from typing import Iterator

from topomapper.exceptions import NotFound
from topomapper.models import (
    Device,
    DeviceMac,
    DhcpLease,
    Interface,
    Network,
    TopologyDevice,
    TopologyNetwork,
    TopologyResponse,
)
from topomapper.store import RecordStore


def build_topology(store: RecordStore, network_id: str) -> TopologyResponse:
    """Build the device tree of ``network_id``.

    Devices without a parent interface are top-level; so are devices whose
    parent interface no longer exists, so that nothing silently disappears.
    Hostnames missing on a device fall back to the network's DHCP leases,
    by MAC first and then by IP.

    Raises:
        NotFound: If the network does not exist.
    """
    network = store.get(Network, network_id)
    if network is None:
        raise NotFound(f"Network {network_id} not found")

    devices = store.list_by_network(Device, network_id)
    leases = store.list_by_network(DhcpLease, network_id)
    mac_to_hostname = {lease.mac.upper(): lease.hostname for lease in leases if lease.hostname}
    ip_to_hostname = {lease.ip: lease.hostname for lease in leases if lease.hostname and lease.ip}

    device_ids = {d.id for d in devices}
    interfaces = [i for i in store.list(Interface) if i.device_id in device_ids]
    interfaces_by_id = {i.id: i for i in interfaces}
    secondary_macs = Counter(m.device_id for m in store.list(DeviceMac) if m.device_id in device_ids)

    nodes: dict[str, TopologyDevice] = {}
    for device in devices:
        hostname = device.hostname or mac_to_hostname.get(device.mac.upper())
        if not hostname and device.ip:
            hostname = ip_to_hostname.get(device.ip)
        nodes[device.id] = TopologyDevice(
            **device.model_dump(exclude={"hostname"}),
            hostname=hostname,
            mac_count=1 + secondary_macs[device.id],
            interfaces=[i for i in interfaces if i.device_id == device.id],
        )

    roots: list[TopologyDevice] = []
    for device in devices:
        node = nodes[device.id]
        parent_interface = interfaces_by_id.get(device.parent_interface_id or "")
        parent = nodes.get(parent_interface.device_id) if parent_interface else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent.children.append(node)

    roots.sort(key=lambda d: (d.parent_interface_id is not None, d.ip != network.root_ip))

    return TopologyResponse(
        network=TopologyNetwork(
            id=network.id,
            name=network.name,
            root_ip=network.root_ip,
            last_scanned_at=network.last_scanned_at,
        ),
        devices=roots,
        total_count=len(devices),
    )


def walk(devices: list[TopologyDevice], depth: int = 0) -> Iterator[tuple[int, TopologyDevice]]:
    """Depth-first (depth, device) pairs."""
    for device in devices:
        yield depth, device
        yield from walk(device.children, depth + 1)


def parent_counts(topology: TopologyResponse) -> Counter[str]:
    """How often each MAC appears in the tree; every value is 1 in a valid tree."""
    return Counter(device.mac for _, device in walk(topology.devices))
