#!/usr/bin/env python3

import ipaddress
import subprocess
from pathlib import Path

from .errors import ConfigurationError
from .log import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = "/etc/fcsandbox.env"

DEFAULT_KERNEL_ARGS = "ro console=ttyS0 noapic reboot=k panic=1 pci=off nomodules random.trust_cpu=on"

DEFAULTS = {
    'FIRECRACKER_BIN': '/usr/sbin/firecracker',
    'KERNEL_IMAGE': '/var/lib/firecracker/kernels/vmlinux',
    'KERNEL_ARGS': DEFAULT_KERNEL_ARGS,
    'LISTEN_HOST': '0.0.0.0',
    'LISTEN_PORT': '8080',
    'SOCKET_PATH_PREFIX': '/tmp',
    'VM_LOG_PATH': '/var/log/fcsandbox',
    'SUBNET': '172.17.0.0/24',
    'GATEWAY': '172.17.0.1',
    'COUNTER_START': '3',
    'CPUS': '1',
    'MEMORY': '512',
    'SHUTDOWN_TIMEOUT': '10',
    'STOP_TIMEOUT': '5',
    'USE_SUDO': '0',
    'LOG_LEVEL': 'INFO',
}

# CLI argument name -> config key
_ARG_KEYS = {
    'firecracker_bin': 'FIRECRACKER_BIN',
    'kernel': 'KERNEL_IMAGE',
    'host': 'LISTEN_HOST',
    'port': 'LISTEN_PORT',
    'socket_prefix': 'SOCKET_PATH_PREFIX',
    'cpus': 'CPUS',
    'memory': 'MEMORY',
    'shutdown_timeout': 'SHUTDOWN_TIMEOUT',
    'log_level': 'LOG_LEVEL',
}

TRUTHY = {'1', 'true', 'yes', 'on'}


class ConfigManager:
    """Manages orchestrator configuration loaded from a KEY=VALUE env file"""

    def __init__(self, config_file=None, overrides=None):
        # Use provided config_file or default to /etc/fcsandbox.env
        if config_file:
            self.config_file = Path(config_file)
        else:
            self.config_file = Path(DEFAULT_CONFIG_FILE)

        self.env_config = dict(DEFAULTS)
        self.env_config.update(self.load_env_config())
        if overrides:
            self.env_config.update({k: str(v) for k, v in overrides.items()})

        # Track if we've already checked Firecracker binary
        self.firecracker_checked = False

    def load_env_config(self):
        """Load configuration from config file"""
        config = {}

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    for line in f:
                        line = line.strip()
                        # Skip comments and empty lines
                        if line and not line.startswith('#'):
                            if '=' in line:
                                key, value = line.split('=', 1)
                                # Strip inline comments (everything after #)
                                if '#' in value:
                                    value = value.split('#')[0]
                                value = value.strip()
                                if value:
                                    config[key.strip()] = value
            except OSError as e:
                logger.warning(f"Could not read config file {self.config_file}: {e}")

        return config

    def apply_args(self, args):
        """Apply command line arguments on top of the file configuration

        Args:
            args: Namespace from argparse; unset (None) values are ignored
        """
        for attr, key in _ARG_KEYS.items():
            value = getattr(args, attr, None)
            if value is not None:
                self.env_config[key] = str(value)

    def get(self, key, default=None):
        return self.env_config.get(key, default)

    def get_int(self, key):
        value = self.env_config.get(key, DEFAULTS.get(key))
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid integer value for {key}: {value!r}")

    def get_float(self, key):
        value = self.env_config.get(key, DEFAULTS.get(key))
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid numeric value for {key}: {value!r}")

    def get_bool(self, key):
        return str(self.env_config.get(key, '')).strip().lower() in TRUTHY

    def get_subnet(self):
        """Get the guest subnet as an IPv4Network"""
        try:
            subnet = ipaddress.ip_network(self.env_config['SUBNET'], strict=True)
        except ValueError as e:
            raise ConfigurationError(f"Invalid SUBNET: {e}")
        if subnet.version != 4:
            raise ConfigurationError("SUBNET must be an IPv4 network")
        return subnet

    def get_gateway(self):
        try:
            return ipaddress.ip_address(self.env_config['GATEWAY'])
        except ValueError as e:
            raise ConfigurationError(f"Invalid GATEWAY: {e}")

    def get_socket_path_prefix(self):
        return self.env_config.get('SOCKET_PATH_PREFIX', DEFAULTS['SOCKET_PATH_PREFIX'])

    def get_vm_log_path(self):
        return self.env_config.get('VM_LOG_PATH', DEFAULTS['VM_LOG_PATH'])

    def setup_environment(self):
        """Perform all preflight checks and environment setup

        Raises:
            ConfigurationError: if the orchestrator cannot run on this host
        """
        self._check_firecracker_binary()

        kernel_image = Path(self.env_config['KERNEL_IMAGE'])
        if not kernel_image.is_file():
            raise ConfigurationError(f"Kernel image not found at {kernel_image}")
        logger.info(f"✓ Kernel image found: {kernel_image}")

        self.validate()
        self._ensure_all_directories()

    def validate(self):
        """Validate values that do not touch the host"""
        subnet = self.get_subnet()
        if subnet.prefixlen < 24:
            raise ConfigurationError(f"SUBNET {subnet} is larger than a /24")
        gateway = self.get_gateway()
        if gateway not in subnet:
            raise ConfigurationError(f"GATEWAY {gateway} is not inside SUBNET {subnet}")

        counter_start = self.get_int('COUNTER_START')
        if counter_start < 0 or counter_start >= subnet.num_addresses - 2:
            raise ConfigurationError(f"COUNTER_START {counter_start} leaves no usable addresses in {subnet}")

        for key in ('CPUS', 'MEMORY', 'LISTEN_PORT'):
            if self.get_int(key) <= 0:
                raise ConfigurationError(f"{key} must be positive")

        for key in ('SHUTDOWN_TIMEOUT', 'STOP_TIMEOUT'):
            if self.get_float(key) < 0:
                raise ConfigurationError(f"{key} must not be negative")

    def _check_firecracker_binary(self):
        """Check if Firecracker binary exists and get its version"""
        # Only check once per session
        if self.firecracker_checked:
            return

        firecracker_path = Path(self.env_config['FIRECRACKER_BIN'])

        if not firecracker_path.exists():
            raise ConfigurationError(
                f"Firecracker binary not found at {firecracker_path}. "
                "Visit: https://github.com/firecracker-microvm/firecracker/releases"
            )

        if not firecracker_path.is_file():
            raise ConfigurationError(f"{firecracker_path} is not a regular file")

        # Try to get the version
        try:
            result = subprocess.run(
                [str(firecracker_path), "--version"],
                capture_output=True,
                text=True,
                timeout=5
            )
            version_lines = result.stdout.strip().split('\n')
            if result.returncode == 0 and version_lines[0]:
                logger.info(f"✓ Firecracker binary found: {version_lines[0]}")
            else:
                # Don't fail here, as the binary might still work
                logger.warning(f"Firecracker binary found at {firecracker_path} but version check failed: {result.stderr.strip()}")
        except subprocess.TimeoutExpired:
            logger.warning("Firecracker binary check timed out")
        except OSError as e:
            logger.warning(f"Could not check Firecracker version: {e}")

        self.firecracker_checked = True

    def _ensure_all_directories(self):
        """Create the socket and VM log directories"""
        for dir_path in (self.get_socket_path_prefix(), self.get_vm_log_path()):
            try:
                Path(dir_path).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(f"Could not create directory {dir_path}: {e}")
