"""Tests for topomapper/enrichment/ports.py"""

from unittest.mock import MagicMock, patch

from conftest import FakeTransport

from topomapper.enrichment.ports import is_port_open, is_port_open_via, probe_ports, probe_ports_via


class TestIsPortOpen:
    @patch("topomapper.enrichment.ports.socket.create_connection")
    def test_open(self, mock_connect):
        mock_connect.return_value = MagicMock()

        assert is_port_open("10.0.0.1", 22, timeout=1.0)
        mock_connect.assert_called_once_with(("10.0.0.1", 22), timeout=1.0)

    @patch("topomapper.enrichment.ports.socket.create_connection", side_effect=ConnectionRefusedError())
    def test_refused(self, mock_connect):
        assert not is_port_open("10.0.0.1", 23)

    @patch("topomapper.enrichment.ports.socket.create_connection", side_effect=TimeoutError())
    def test_timeout(self, mock_connect):
        assert not is_port_open("10.0.0.1", 80)


class TestProbePorts:
    @patch("topomapper.enrichment.ports.is_port_open")
    def test_returns_sorted_open_ports(self, mock_open):
        mock_open.side_effect = lambda host, port, timeout: port in (443, 22)

        assert probe_ports("10.0.0.1", [443, 80, 22], timeout=0.5) == [22, 443]

    def test_no_ports(self):
        assert probe_ports("10.0.0.1", []) == []


class TestProbeThroughJumpHost:
    """Port checks made by the jump host over forwarded channels."""

    def test_open_port_channel_is_closed(self):
        jump = MagicMock()
        channel = jump.open_tunnel.return_value

        assert is_port_open_via(jump, "10.0.0.2", 22, timeout=1.0)
        jump.open_tunnel.assert_called_once_with("10.0.0.2", 22, timeout=1.0)
        channel.close.assert_called_once()

    def test_refused_channel_is_closed_port(self):
        jump = FakeTransport(host="10.0.0.1", tunnel_ports={"10.0.0.2": [80]})

        assert not is_port_open_via(jump, "10.0.0.2", 22)

    def test_probe_ports_via(self):
        jump = FakeTransport(host="10.0.0.1", tunnel_ports={"10.0.0.2": [22, 8291]})

        assert probe_ports_via(jump, "10.0.0.2", [8291, 80, 22], timeout=0.5) == [22, 8291]
        assert sorted(jump.tunnels) == [("10.0.0.2", 22), ("10.0.0.2", 8291)]

    def test_forwarding_refused_means_nothing_open(self):
        assert probe_ports_via(FakeTransport(host="10.0.0.1"), "10.0.0.2", [22, 80]) == []
