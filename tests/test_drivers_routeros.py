"""Tests for topomapper/drivers/routeros.py and the terse-output helpers."""

from __future__ import annotations

from conftest import FakeTransport

from topomapper.drivers._parsing import (
    decode_mikrotik_string,
    format_vlan,
    normalize_mac,
    parse_port_range,
    parse_terse,
    parse_terse_line,
    sanitize_hostname,
)
from topomapper.drivers.base import FetchContext
from topomapper.drivers.routeros import FETCH_COMMANDS, RouterOSDriver, RouterOSParser, scan_targets
from topomapper.models import Credential, NeighborSource

RAW = {
    "identity": "  name: core-rtr\n",
    "resource": "  uptime: 3w2d\n  version: 7.12 (stable)\n  board-name: RB4011iGS+\n",
    "routerboard": "  routerboard: yes\n  serial-number: HE1234567\n",
    "interfaces": (
        " 0  R name=ether1 default-name=ether1 type=ether mtu=1500 mac-address=AA:BB:CC:00:00:01\n"
        " 1  R name=ether2 default-name=ether2 type=ether mtu=1500 mac-address=AA:BB:CC:00:00:02\n"
        " 2  R name=ether3 default-name=ether3 type=ether mtu=1500 mac-address=AA:BB:CC:00:00:03 comment=to hall\n"
        " 3  R name=bridge1 type=bridge mtu=1500 mac-address=AA:BB:CC:00:00:04\n"
        " 4     name=ether4 default-name=ether4 type=ether mtu=1500 mac-address=AA:BB:CC:00:00:05\n"
    ),
    "addresses": (
        " 0   address=10.0.0.2/24 network=10.0.0.0 interface=ether1 actual-interface=ether1\n"
        " 1   address=192.168.88.1/24 network=192.168.88.0 interface=bridge1 actual-interface=bridge1\n"
    ),
    "bridge_ports": (
        " 0     interface=ether2 bridge=bridge1 pvid=1\n"
        " 1     interface=ether3 bridge=bridge1 pvid=10\n"
    ),
    "arp": (
        " 0 DC address=10.0.0.1 mac-address=DC:2C:6E:00:00:01 interface=ether1\n"
        " 1 DC address=192.168.88.10 mac-address=11:22:33:44:55:66 interface=bridge1\n"
    ),
    "bridge_hosts": (
        " 0   mac-address=DC:2C:6E:00:00:01 on-interface=ether1 bridge=bridge1\n"
        " 1   mac-address=11:22:33:44:55:66 on-interface=ether2 bridge=bridge1\n"
        " 2   mac-address=77:88:99:AA:BB:CC on-interface=ether3 bridge=bridge1\n"
        " 3 DL mac-address=AA:BB:CC:00:00:04 on-interface=bridge1 bridge=bridge1 local=true\n"
    ),
    "default_route": " 0 As dst-address=0.0.0.0/0 gateway=10.0.0.1 distance=1\n",
    "dhcp_servers": " 0   name=dhcp1 interface=bridge1 address-pool=pool1\n",
    "dhcp_leases": (
        " 0   address=192.168.88.10 mac-address=11:22:33:44:55:66 server=dhcp1 host-name=laptop status=bound\n"
        " 1   address=192.168.88.11 mac-address=11:22:33:44:55:77 server=dhcp1 status=waiting\n"
    ),
    "ip_neighbors": (
        " 0   interface=ether3 address=192.168.88.20 mac-address=77:88:99:AA:BB:CC identity=ap-hall "
        "platform=MikroTik version=7.10 board=cAP\n"
    ),
}


class TestTerseHelpers:
    """Tests for the key=value helpers in drivers/_parsing.py."""

    def test_values_may_contain_spaces(self):
        row = parse_terse_line(" 0   name=ether3 comment=to the hall mtu=1500")
        assert row == {"name": "ether3", "comment": "to the hall", "mtu": "1500"}

    def test_quoted_values_are_unquoted(self):
        assert parse_terse_line('name="office ap"')["name"] == "office ap"

    def test_required_key_filters_rows(self):
        rows = parse_terse(" 0  R name=ether1\n 1     comment=x\n", required="name")
        assert [r["name"] for r in rows] == ["ether1"]
        assert rows[0]["_flags"] == "R"

    def test_decode_mikrotik_hex(self):
        assert decode_mikrotik_string("vC3B5rk") == "võrk"

    def test_decode_leaves_plain_text(self):
        assert decode_mikrotik_string("office") == "office"
        assert decode_mikrotik_string(None) is None

    def test_normalize_mac(self):
        assert normalize_mac("aa-bb-cc-dd-ee-ff") == "AA:BB:CC:DD:EE:FF"
        assert normalize_mac("aabb.ccdd.eeff") == "AA:BB:CC:DD:EE:FF"
        assert normalize_mac("not-a-mac") is None

    def test_parse_port_range(self):
        assert parse_port_range("1-4,7") == [1, 2, 3, 4, 7]
        assert parse_port_range("-") == []

    def test_format_vlan(self):
        assert format_vlan("10", ["30", "20"]) == "10+T:20,30"
        assert format_vlan(None, ["20"], {"20": "guests"}) == "T:20(guests)"
        assert format_vlan(None, []) is None

    def test_sanitize_hostname_rejects_errors(self):
        assert sanitize_hostname("ap-hall\n") == "ap-hall"
        assert sanitize_hostname("bash: hostname: command not found") is None
        assert sanitize_hostname("two\nlines") is None


class TestRouterOSParser:
    """Tests for RouterOSParser."""

    def test_identity_fields(self):
        info = RouterOSParser(RAW).parse()

        assert info.hostname == "core-rtr"
        assert info.model == "RB4011iGS+"
        assert info.serial_number == "HE1234567"
        assert info.firmware_version == "RouterOS 7.12"

    def test_interfaces(self):
        info = RouterOSParser(RAW).parse()
        by_name = {i.name: i for i in info.interfaces}

        assert by_name["ether1"].ip == "10.0.0.2"
        assert by_name["ether1"].mac == "AA:BB:CC:00:00:01"
        assert by_name["ether2"].bridge == "bridge1"
        assert by_name["ether3"].vlan == "10"
        assert by_name["ether3"].comment == "to hall"
        assert by_name["bridge1"].ip == "192.168.88.1"
        assert by_name["ether4"].link_up is False
        assert info.primary_mac() == "AA:BB:CC:00:00:01"

    def test_upstream_port_from_default_gateway(self):
        info = RouterOSParser(RAW).parse()

        assert info.own_upstream_interface == "ether1"
        assert all(n.interface != "ether1" for n in info.neighbors)

    def test_dhcp_neighbor_resolved_to_physical_port(self):
        info = RouterOSParser(RAW).parse()
        laptop = next(n for n in info.neighbors if n.mac == "11:22:33:44:55:66")

        assert laptop.ip == "192.168.88.10"
        assert laptop.hostname == "laptop"
        assert laptop.interface == "ether2"
        assert laptop.source == NeighborSource.DHCP

    def test_unbound_lease_is_not_a_neighbor(self):
        info = RouterOSParser(RAW).parse()

        assert "11:22:33:44:55:77" not in {n.mac for n in info.neighbors}
        assert len(info.dhcp_leases) == 2

    def test_mndp_enriches_bridge_host(self):
        info = RouterOSParser(RAW).parse()
        ap = next(n for n in info.neighbors if n.mac == "77:88:99:AA:BB:CC")

        assert ap.interface == "ether3"
        assert ap.hostname == "ap-hall"
        assert ap.ip == "192.168.88.20"
        assert ap.model == "cAP"
        assert ap.version == "7.10"

    def test_local_bridge_hosts_skipped(self):
        info = RouterOSParser(RAW).parse()

        assert "AA:BB:CC:00:00:04" not in {n.mac for n in info.neighbors}

    def test_refresh_resolves_bridge_pinned_neighbor(self):
        raw = dict(RAW)
        raw["bridge_hosts"] = " 0   mac-address=11:22:33:44:55:66 on-interface=bridge1 bridge=bridge1\n"
        pinged = []

        def refresh(ips):
            pinged.extend(ips)
            return " 0   mac-address=11:22:33:44:55:66 on-interface=ether2 bridge=bridge1\n"

        info = RouterOSParser(raw).parse(refresh=refresh)
        laptop = next(n for n in info.neighbors if n.mac == "11:22:33:44:55:66")

        assert pinged == ["192.168.88.10"]
        assert laptop.interface == "ether2"

    def test_empty_outputs_give_empty_info(self):
        info = RouterOSParser({}).parse()

        assert info.hostname is None
        assert info.interfaces == []
        assert info.neighbors == []


class TestScanTargets:
    """Tests for scan_targets."""

    def test_targets_per_interface(self):
        assert scan_targets(RAW["addresses"]) == [
            ("ether1", "10.0.0.0/24"),
            ("bridge1", "192.168.88.0/24"),
        ]

    def test_wide_subnets_are_narrowed(self):
        assert scan_targets(" 0   address=10.1.2.3/16 interface=ether1\n") == [("ether1", "10.1.2.0/24")]


class TestRouterOSDriver:
    """Tests for RouterOSDriver.fetch over a fake exec transport."""

    def test_fetch_runs_commands_and_parses(self):
        responses = {FETCH_COMMANDS[key]: value for key, value in RAW.items()}
        transport = FakeTransport(banner="SSH-2.0-ROSSSH", exec_responses=responses)
        ctx = FetchContext(credential=Credential(username="admin", password="x"), host="10.0.0.2")

        info = RouterOSDriver().fetch(transport, ctx)

        assert info.hostname == "core-rtr"
        assert any(c.startswith("/tool ip-scan address-range=10.0.0.0/24") for c in transport.commands)
        assert set(FETCH_COMMANDS.values()) <= set(transport.commands)

    def test_identify(self):
        driver = RouterOSDriver()
        assert driver.identify("SSH-2.0-ROSSSH") == 0.9
        assert driver.identify("SSH-2.0-OpenSSH_9.6") == 0.0
