"""Tests for topomapper/settings.py"""

import pytest
from pydantic import ValidationError

from topomapper.settings import MANAGEMENT_PORTS, CrawlSettings


class TestCrawlSettings:
    """Tests for CrawlSettings."""

    def test_defaults(self):
        settings = CrawlSettings()

        assert settings.workers == 4
        assert settings.cache_ttl_days == 30
        assert settings.management_ports == MANAGEMENT_PORTS
        assert 22 in settings.management_ports
        assert settings.jump_host is True

    def test_management_ports_not_shared(self):
        first = CrawlSettings()
        first.management_ports.append(2222)

        assert 2222 not in CrawlSettings().management_ports

    def test_workers_bounds(self):
        with pytest.raises(ValidationError):
            CrawlSettings(workers=0)


class TestFromEnv:
    """Tests for CrawlSettings.from_env."""

    def test_reads_prefixed_variables(self):
        settings = CrawlSettings.from_env(
            {
                "TOPOMAPPER_WORKERS": "8",
                "TOPOMAPPER_ENABLE_MDNS": "false",
                "TOPOMAPPER_SNMP_COMMUNITY": "private",
                "TOPOMAPPER_CONNECT_TIMEOUT": "2.5",
                "TOPOMAPPER_JUMP_HOST": "no",
                "WORKERS": "99",
            }
        )

        assert settings.workers == 8
        assert settings.enable_mdns is False
        assert settings.snmp_community == "private"
        assert settings.connect_timeout == 2.5
        assert settings.jump_host is False

    def test_list_fields_are_comma_separated(self):
        settings = CrawlSettings.from_env({"TOPOMAPPER_MANAGEMENT_PORTS": "22, 80,,443"})

        assert settings.management_ports == [22, 80, 443]

    def test_overrides_win_and_none_is_ignored(self):
        settings = CrawlSettings.from_env({"TOPOMAPPER_WORKERS": "8"}, workers=2, enable_snmp=None)

        assert settings.workers == 2
        assert settings.enable_snmp is True

    def test_invalid_value_raises(self):
        with pytest.raises(ValidationError):
            CrawlSettings.from_env({"TOPOMAPPER_WORKERS": "many"})

    def test_process_environment(self, monkeypatch):
        monkeypatch.setenv("TOPOMAPPER_SHELL_TIMEOUT", "60")

        assert CrawlSettings.from_env().shell_timeout == 60.0
