"""Tests for topomapper/models.py and topomapper/exceptions.py"""

import pytest

from topomapper.exceptions import (
    AuthenticationFailed,
    CommandTimeout,
    ConnectTimeout,
    NotFound,
    ParseIncomplete,
    ScanAlreadyRunning,
    SessionError,
    TopologyError,
    TransportError,
)
from topomapper.models import (
    Device,
    DeviceInfo,
    InterfaceInfo,
    NeighborInfo,
    NeighborSource,
    ScanStatus,
    StatusEvent,
    TopologyDevice,
)


class TestExceptions:
    """Tests for the exception hierarchy."""

    @pytest.mark.parametrize("exc", [ConnectTimeout, TransportError])
    def test_session_errors(self, exc):
        assert issubclass(exc, SessionError)
        assert issubclass(exc, TopologyError)

    def test_command_timeout_keeps_progress(self):
        error = CommandTimeout("10.0.0.2: no prompt after 'show mac'", completed=3)

        assert error.completed == 3
        assert "show mac" in str(error)

    def test_authentication_failed_is_not_a_session_error(self):
        assert not issubclass(AuthenticationFailed, SessionError)

    def test_scan_already_running_message(self):
        error = ScanAlreadyRunning("n1")

        assert error.network_id == "n1"
        assert str(error) == "Scan already running for network n1"

    def test_not_found_is_a_key_error_with_plain_message(self):
        error = NotFound("Network x not found")

        assert isinstance(error, KeyError)
        assert str(error) == "Network x not found"

    def test_parse_incomplete_lists_fields(self):
        error = ParseIncomplete(["model", "serial_number"])

        assert error.missing == ["model", "serial_number"]
        assert str(error) == "Incomplete device info, missing: model, serial_number"


class TestDeviceInfo:
    """Tests for DeviceInfo helpers."""

    def test_primary_mac_is_first_interface_mac(self):
        info = DeviceInfo(
            interfaces=[
                InterfaceInfo(name="lo"),
                InterfaceInfo(name="ether1", mac="aa:bb:cc:00:00:01"),
                InterfaceInfo(name="ether2", mac="aa:bb:cc:00:00:02"),
            ]
        )

        assert info.primary_mac() == "AA:BB:CC:00:00:01"

    def test_primary_mac_none(self):
        assert DeviceInfo().primary_mac() is None

    def test_ensure_complete(self, sample_device_info):
        sample_device_info().ensure_complete()

        with pytest.raises(ParseIncomplete) as exc:
            sample_device_info(serial_number=None, firmware_version=None).ensure_complete()
        assert exc.value.missing == ["serial_number", "firmware_version"]


class TestModels:
    def test_neighbor_trust_order(self):
        trust = {s: NeighborInfo(mac="x", source=s).trust for s in NeighborSource}

        assert trust[NeighborSource.BRIDGE_HOST] < trust[NeighborSource.ARP] < trust[NeighborSource.DHCP]
        assert trust[NeighborSource.DHCP] < trust[NeighborSource.MNDP] == trust[NeighborSource.LLDP]

    def test_device_ids_are_unique(self):
        assert Device(mac="a").id != Device(mac="a").id

    def test_topology_device_defaults(self):
        node = TopologyDevice(mac="AA:00:00:00:00:01")

        assert node.mac_count == 1
        assert node.children == []

    def test_status_event_json(self):
        assert StatusEvent(status=ScanStatus.STOPPED).model_dump(mode="json") == {
            "type": "status",
            "status": "stopped",
            "error": None,
        }
