"""Tests for topomapper/enrichment/oui.py"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from topomapper.enrichment.oui import load_oui_db, lookup_vendor, normalize_vendor_name

OUI_TEXT = (
    "OUI/MA-L                                                    Organization\n"
    "AA-BB-CC   (hex)\t\tTestVendor\n"
    "AABBCC     (base 16)\t\tTestVendor\n"
    "4C-5E-0C   (hex)\t\tRouterboard.com\n"
    "Random line without hex\n"
)


class TestNormalizeVendorName:
    """Tests for normalize_vendor_name function."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Routerboard.com", "MikroTik"),
            ("Ubiquiti Networks Inc.", "Ubiquiti"),
            ("Cisco Systems, Inc", "Cisco"),
            ("Hewlett Packard", "HP"),
            ("Hewlett Packard Enterprise", "HPE"),
            ("ZyXEL Communications Corporation", "Zyxel"),
        ],
    )
    def test_known_vendors(self, raw, expected):
        assert normalize_vendor_name(raw) == expected

    def test_corporate_suffix_stripped(self):
        """Test unknown vendors lose their corporate suffix."""
        assert normalize_vendor_name("Foobar Widgets, Inc.") == "Foobar Widgets"

    def test_plain_unknown_vendor_unchanged(self):
        assert normalize_vendor_name("Foobar Widgets") == "Foobar Widgets"


class TestLookupVendor:
    """Tests for lookup_vendor function."""

    def test_lookup_vendor_with_matching_prefix(self):
        """Test lookup with matching OUI prefix."""
        assert lookup_vendor("aa:bb:cc:dd:ee:ff", {"AA:BB:CC": "TestVendor"}) == "TestVendor"

    def test_dash_separated_mac(self):
        assert lookup_vendor("AA-BB-CC-DD-EE-FF", {"AA:BB:CC": "TestVendor"}) == "TestVendor"

    def test_registry_name_is_normalized(self):
        assert lookup_vendor("4C:5E:0C:00:00:01", {"4C:5E:0C": "Routerboard.com"}) == "MikroTik"

    def test_override_beats_registry(self):
        """Test built-in overrides win over stale registry data."""
        assert lookup_vendor("EC:58:EA:00:00:01", {"EC:58:EA": "Something Else"}) == "Ruckus"

    def test_missing_prefix_returns_none(self):
        assert lookup_vendor("11:22:33:44:55:66", {"AA:BB:CC": "TestVendor"}) is None

    @pytest.mark.parametrize("mac", [None, "", "UNKNOWN-10-0-0-4"])
    def test_unusable_mac_returns_none(self, mac):
        assert lookup_vendor(mac, {"AA:BB:CC": "TestVendor"}) is None


class TestLoadOuiDb:
    """Tests for load_oui_db function."""

    def test_cache_exists_reads_and_parses_file(self, tmp_path):
        """Test loading OUI database from cache file."""
        path = tmp_path / "oui.txt"
        path.write_text(OUI_TEXT)

        assert load_oui_db(path) == {"AA:BB:CC": "TestVendor", "4C:5E:0C": "Routerboard.com"}

    def test_cache_missing_without_download(self, tmp_path):
        assert load_oui_db(tmp_path / "oui.txt", download=False) == {}

    @patch("topomapper.enrichment.oui.subprocess.run")
    def test_cache_missing_downloads_and_parses(self, mock_run, tmp_path):
        """Test downloading and parsing OUI database when cache missing."""
        path = tmp_path / "oui.txt"

        def fake_curl(cmd, **kwargs):
            path.write_text(OUI_TEXT)
            return Mock(returncode=0, stderr="")

        mock_run.side_effect = fake_curl

        result = load_oui_db(path)

        assert result["AA:BB:CC"] == "TestVendor"
        args = mock_run.call_args[0][0]
        assert args[0] == "curl"
        assert str(path) in args

    @patch("topomapper.enrichment.oui.subprocess.run")
    def test_download_failure_returns_empty(self, mock_run, tmp_path):
        mock_run.return_value = Mock(returncode=22, stderr="404")
        assert load_oui_db(tmp_path / "oui.txt") == {}

    @patch("topomapper.enrichment.oui.subprocess.run")
    def test_download_timeout_returns_empty(self, mock_run, tmp_path):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="curl", timeout=30)
        assert load_oui_db(tmp_path / "oui.txt") == {}

    @patch("topomapper.enrichment.oui.subprocess.run")
    def test_curl_missing_returns_empty(self, mock_run, tmp_path):
        mock_run.side_effect = FileNotFoundError("curl")
        assert load_oui_db(tmp_path / "oui.txt") == {}
