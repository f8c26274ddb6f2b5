"""Tests for topomapper/topology.py"""

from __future__ import annotations

import pytest

from topomapper.exceptions import NotFound
from topomapper.models import Device, DeviceMac, DhcpLease, Interface
from topomapper.topology import build_topology, parent_counts, walk


@pytest.fixture()
def tree(store, make_network):
    """root(10.0.0.1) -> ether2 -> switch(10.0.0.2) -> Port 5 -> ap(10.0.0.3)."""
    network = make_network()
    root = store.upsert(Device(mac="AA:00:00:00:00:01", ip="10.0.0.1", network_id=network.id, hostname="core"))
    ether2 = store.upsert(Interface(device_id=root.id, name="ether2"))
    switch = store.upsert(
        Device(
            mac="AA:00:00:00:00:02",
            ip="10.0.0.2",
            network_id=network.id,
            parent_interface_id=ether2.id,
            upstream_interface="ether2",
        )
    )
    port5 = store.upsert(Interface(device_id=switch.id, name="Port 5"))
    ap = store.upsert(
        Device(mac="AA:00:00:00:00:03", ip="10.0.0.3", network_id=network.id, parent_interface_id=port5.id)
    )
    return network, root, switch, ap


class TestBuildTopology:
    """Tests for build_topology."""

    def test_unknown_network(self, store):
        with pytest.raises(NotFound):
            build_topology(store, "missing")

    def test_nesting(self, store, tree):
        network, root, switch, ap = tree

        topology = build_topology(store, network.id)

        assert topology.total_count == 3
        assert [d.mac for d in topology.devices] == [root.mac]
        assert topology.devices[0].children[0].mac == switch.mac
        assert topology.devices[0].children[0].children[0].mac == ap.mac
        assert topology.network.root_ip == "10.0.0.1"

    def test_interfaces_attached(self, store, tree):
        network, root, _, _ = tree

        top = build_topology(store, network.id).devices[0]

        assert [i.name for i in top.interfaces] == ["ether2"]

    def test_hostname_from_dhcp_lease(self, store, tree):
        network, _, switch, ap = tree
        store.upsert(DhcpLease(network_id=network.id, mac=switch.mac, hostname="sw-office"))
        store.upsert(DhcpLease(network_id=network.id, mac="FF:00:00:00:00:00", ip=ap.ip, hostname="ap-hall"))

        by_mac = {d.mac: d for _, d in walk(build_topology(store, network.id).devices)}

        assert by_mac[switch.mac].hostname == "sw-office"
        assert by_mac[ap.mac].hostname == "ap-hall"
        assert by_mac["AA:00:00:00:00:01"].hostname == "core"

    def test_mac_count_includes_secondary_macs(self, store, tree):
        network, root, _, _ = tree
        store.upsert(DeviceMac(device_id=root.id, mac="AA:00:00:00:01:01"))
        store.upsert(DeviceMac(device_id=root.id, mac="AA:00:00:00:01:02"))

        top = build_topology(store, network.id).devices[0]

        assert top.mac_count == 3
        assert top.children[0].mac_count == 1

    def test_orphan_becomes_top_level(self, store, tree):
        network, root, switch, ap = tree
        store.delete_where(Interface, device_id=switch.id)

        topology = build_topology(store, network.id)

        assert [d.mac for d in topology.devices] == [root.mac, ap.mac]
        assert topology.total_count == 3

    def test_root_device_sorted_first(self, store, make_network):
        network = make_network(root_ip="10.0.0.1")
        store.upsert(Device(mac="BB:00:00:00:00:09", ip="10.0.0.9", network_id=network.id))
        store.upsert(Device(mac="BB:00:00:00:00:01", ip="10.0.0.1", network_id=network.id))

        topology = build_topology(store, network.id)

        assert topology.devices[0].ip == "10.0.0.1"

    def test_other_networks_excluded(self, store, tree, make_network):
        network = tree[0]
        other = make_network(name="lab", root_ip="10.1.0.1")
        store.upsert(Device(mac="CC:00:00:00:00:01", network_id=other.id))

        assert build_topology(store, network.id).total_count == 3
        assert build_topology(store, other.id).total_count == 1

    def test_every_device_appears_once(self, store, tree):
        counts = parent_counts(build_topology(store, tree[0].id))

        assert set(counts.values()) == {1}
        assert len(counts) == 3


def test_walk_depths(store, tree):
    depths = [depth for depth, _ in walk(build_topology(store, tree[0].id).devices)]
    assert depths == [0, 1, 2]
