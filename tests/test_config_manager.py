"""Tests for fcsandbox.config_manager."""

import argparse
import ipaddress

import pytest

from fcsandbox.config_manager import DEFAULT_KERNEL_ARGS, ConfigManager
from fcsandbox.errors import ConfigurationError


def write_config(tmp_path, text):
    path = tmp_path / "fcsandbox.env"
    path.write_text(text)
    return path


class TestLoading:
    def test_defaults_without_file(self, tmp_path):
        config = ConfigManager(config_file=tmp_path / "missing.env")
        assert config.get('FIRECRACKER_BIN') == "/usr/sbin/firecracker"
        assert config.get('KERNEL_ARGS') == DEFAULT_KERNEL_ARGS
        assert config.get_int('LISTEN_PORT') == 8080
        assert config.get_int('COUNTER_START') == 3
        assert config.get_subnet() == ipaddress.ip_network("172.17.0.0/24")
        assert str(config.get_gateway()) == "172.17.0.1"
        assert config.get_bool('USE_SUDO') is False

    def test_file_parsing(self, tmp_path):
        path = write_config(tmp_path, (
            "# comment line\n"
            "\n"
            "CPUS=2\n"
            "MEMORY = 1024   # MiB\n"
            "USE_SUDO=yes\n"
            "KERNEL_IMAGE=\n"
            "not a setting\n"
        ))
        config = ConfigManager(config_file=path)
        assert config.get_int('CPUS') == 2
        assert config.get_int('MEMORY') == 1024
        assert config.get_bool('USE_SUDO') is True
        # Empty values keep the default
        assert config.get('KERNEL_IMAGE') == "/var/lib/firecracker/kernels/vmlinux"

    def test_cli_args_override_file(self, tmp_path):
        path = write_config(tmp_path, "LISTEN_PORT=9000\nCPUS=2\n")
        config = ConfigManager(config_file=path)
        config.apply_args(argparse.Namespace(port=9100, cpus=None, log_level="DEBUG"))

        assert config.get_int('LISTEN_PORT') == 9100
        assert config.get_int('CPUS') == 2
        assert config.get('LOG_LEVEL') == "DEBUG"

    def test_overrides(self, tmp_path):
        config = ConfigManager(config_file=tmp_path / "missing.env", overrides={'SHUTDOWN_TIMEOUT': 2.5})
        assert config.get_float('SHUTDOWN_TIMEOUT') == 2.5

    def test_invalid_integer(self, tmp_path):
        config = ConfigManager(config_file=write_config(tmp_path, "CPUS=many\n"))
        with pytest.raises(ConfigurationError, match="CPUS"):
            config.get_int('CPUS')


class TestValidation:
    def test_defaults_are_valid(self, tmp_path):
        ConfigManager(config_file=tmp_path / "missing.env").validate()

    @pytest.mark.parametrize("text, message", [
        ("GATEWAY=10.0.0.1\n", "not inside SUBNET"),
        ("SUBNET=10.0.0.0/16\nGATEWAY=10.0.0.1\n", "larger than a /24"),
        ("SUBNET=fd00::/120\n", "IPv4"),
        ("SUBNET=not-a-network\n", "Invalid SUBNET"),
        ("COUNTER_START=254\n", "COUNTER_START"),
        ("MEMORY=0\n", "MEMORY must be positive"),
        ("STOP_TIMEOUT=-1\n", "STOP_TIMEOUT"),
    ])
    def test_rejects(self, tmp_path, text, message):
        config = ConfigManager(config_file=write_config(tmp_path, text))
        with pytest.raises(ConfigurationError, match=message):
            config.validate()


class TestSetupEnvironment:
    def test_success_creates_directories(self, config_manager, fake_host, tmp_path):
        config_manager.setup_environment()

        assert (tmp_path / "logs").is_dir()
        assert config_manager.firecracker_checked
        assert fake_host.commands[0][1] == "--version"

    def test_missing_binary(self, config_manager, tmp_path):
        config_manager.env_config['FIRECRACKER_BIN'] = str(tmp_path / "nope")
        with pytest.raises(ConfigurationError, match="Firecracker binary not found"):
            config_manager.setup_environment()

    def test_missing_kernel(self, config_manager, fake_host, tmp_path):
        config_manager.env_config['KERNEL_IMAGE'] = str(tmp_path / "vmlinux-missing")
        with pytest.raises(ConfigurationError, match="Kernel image not found"):
            config_manager.setup_environment()
