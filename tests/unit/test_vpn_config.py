"""
Unit tests for vpn_config.py - parsing, defaults and file watching.
"""

from pathlib import Path

import pytest
import yaml

from vpn_config import (
    Config,
    ConfigWatcher,
    DEFAULT_CONFIG,
    VpnInterfaceSpec,
    load_config,
    parse_config,
    write_default_config,
)
from vpn_errors import ConfigError


class TestParseConfig:
    """YAML document -> Config."""

    def test_sample_config(self, config_path: Path, sample_config_yaml: str):
        config_path.write_text(sample_config_yaml)
        config = load_config(config_path)
        assert config.vpn_interfaces == (
            VpnInterfaceSpec(name="wg0", weight=2, mark="0x3e9"),
            VpnInterfaceSpec(name="wg1", weight=1, mark="0x3ea"),
        )
        assert config.lan_interfaces == ("br-lan",)
        assert config.no_vpn_ips == ("192.168.0.0/16", "10.0.0.0/8")
        assert config.ping_addresses == ("8.8.8.8",)
        assert config.ping_timeout_seconds == 3
        assert config.probe_failure_threshold == 3
        assert config.manage_routes is False
        assert config.domain_ip_file is None

    def test_empty_document_uses_defaults(self):
        assert parse_config(None) == DEFAULT_CONFIG
        assert parse_config({}) == DEFAULT_CONFIG

    def test_defaults(self):
        assert DEFAULT_CONFIG.vpn_interfaces == (VpnInterfaceSpec("vpn", 1, "0x3e9"),)
        assert DEFAULT_CONFIG.lan_interfaces == ("br-lan",)
        assert DEFAULT_CONFIG.no_vpn_ips == ("192.168.0.0/16",)
        assert DEFAULT_CONFIG.ping_addresses == ("8.8.8.8", "cloudflare.com")
        assert DEFAULT_CONFIG.ping_timeout_seconds == 4
        assert DEFAULT_CONFIG.probe_failure_threshold == 2

    def test_marks_normalized(self):
        config = parse_config({"vpn-interfaces": [{"name": "wg0", "mark": 1001}]})
        assert config.vpn_interfaces[0].mark == "0x3e9"
        assert config.vpn_interfaces[0].mark_value == 1001

    def test_non_positive_weight_floored(self):
        config = parse_config({"vpn-interfaces": [{"name": "wg0", "mark": 1, "weight": 0}]})
        assert config.vpn_interfaces[0].weight == 1

    def test_empty_interface_list_allowed(self):
        config = parse_config({"vpn-interfaces": [], "ping-addresses": []})
        assert config.vpn_interfaces == ()

    def test_scalar_lan_interface(self):
        assert parse_config({"lan-interfaces": "eth1"}).lan_interfaces == ("eth1",)

    def test_single_address_in_no_vpn_ips(self):
        assert parse_config({"no-vpn-ips": ["1.2.3.4"]}).no_vpn_ips == ("1.2.3.4",)

    @pytest.mark.parametrize("data", [
        [],
        {"vpn-interfaces": "wg0"},
        {"vpn-interfaces": ["wg0"]},
        {"vpn-interfaces": [{"name": "wg0"}]},
        {"vpn-interfaces": [{"name": "", "mark": 1}]},
        {"vpn-interfaces": [{"name": "wg0", "mark": "nope"}]},
        {"vpn-interfaces": [{"name": "wg0", "mark": 1, "weight": "heavy"}]},
        {"vpn-interfaces": [{"name": "wg0", "mark": 1}, {"name": "wg0", "mark": 2}]},
        {"vpn-interfaces": [{"name": "wg0", "mark": 1}, {"name": "wg1", "mark": "0x1"}]},
        {"lan-interfaces": ["br lan"]},
        {"lan-interfaces": {"a": 1}},
        {"no-vpn-ips": ["300.0.0.0/8"]},
        {"ping-addresses": []},
        {"ping-timeout-seconds": 0},
        {"ping-timeout-seconds": "fast"},
        {"ping-timeout-seconds": True},
        {"probe-failure-threshold": -1},
        {"manage-routes": "yes"},
    ])
    def test_invalid_documents(self, data):
        with pytest.raises(ConfigError):
            parse_config(data)

    @pytest.mark.parametrize("mark", [0, 253, "0xfd", 254, "0xfe", 255, "0xff"])
    def test_reserved_routing_table_marks(self, mark):
        with pytest.raises(ConfigError):
            parse_config({"vpn-interfaces": [{"name": "wg0", "mark": mark}]})

    @pytest.mark.parametrize("mark", [252, 256, "0x100"])
    def test_marks_next_to_reserved_tables(self, mark):
        config = parse_config({"vpn-interfaces": [{"name": "wg0", "mark": mark}]})
        assert config.vpn_interfaces[0].mark_value == int(str(mark), 0)


class TestLoadConfig:
    """Reading from disk."""

    def test_missing_file_uses_defaults(self, temp_dir: Path):
        assert load_config(temp_dir / "absent.yml") == DEFAULT_CONFIG

    def test_malformed_yaml(self, config_path: Path):
        config_path.write_text("vpn-interfaces: [\n  - name: wg0\n")
        with pytest.raises(ConfigError):
            load_config(config_path)

    def test_write_default_config_round_trip(self, temp_dir: Path):
        path = temp_dir / "etc" / "config.yml"
        write_default_config(path)
        data = yaml.safe_load(path.read_text())
        assert data["vpn-interfaces"] == [{"name": "vpn", "weight": 1, "mark": "0x3e9"}]
        assert load_config(path) == DEFAULT_CONFIG

    def test_to_dict_includes_domain_ip_file(self):
        config = Config(domain_ip_file="/run/ips")
        assert config.to_dict()["domain-ip-file"] == "/run/ips"
        assert "domain-ip-file" not in DEFAULT_CONFIG.to_dict()


class TestConfigWatcher:
    """Change detection without a running observer."""

    def test_check_reports_changes_once(self, config_path: Path, sample_config_yaml: str):
        config_path.write_text(sample_config_yaml)
        current = load_config(config_path)
        seen = []
        watcher = ConfigWatcher(config_path, current, seen.append)

        assert watcher.check() is False
        config_path.write_text(sample_config_yaml.replace("weight: 2", "weight: 5"))
        assert watcher.check() is True
        assert watcher.check() is False
        assert len(seen) == 1
        assert seen[0].vpn_interfaces[0].weight == 5

    def test_invalid_change_ignored(self, config_path: Path, sample_config_yaml: str):
        config_path.write_text(sample_config_yaml)
        seen = []
        watcher = ConfigWatcher(config_path, load_config(config_path), seen.append)
        config_path.write_text("ping-timeout-seconds: -4\n")
        assert watcher.check() is False
        assert seen == []

    def test_update_current_suppresses_notification(self, config_path: Path, sample_config_yaml: str):
        config_path.write_text(sample_config_yaml)
        seen = []
        watcher = ConfigWatcher(config_path, DEFAULT_CONFIG, seen.append)
        watcher.update_current(load_config(config_path))
        assert watcher.check() is False
        assert seen == []

    def test_stop_without_start(self, config_path: Path):
        watcher = ConfigWatcher(config_path, DEFAULT_CONFIG, lambda c: None)
        watcher.stop()
