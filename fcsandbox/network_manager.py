#!/usr/bin/env python3

import ipaddress
import subprocess
import threading
from pathlib import Path

from .errors import AllocationExhaustedError, NetworkSetupError
from .log import get_logger
from .models import NetworkIdentity

logger = get_logger(__name__)

MAC_PREFIX = "02:FC:00:00:00"
TAP_PREFIX = "fc-tap-"


class NetworkAllocator:
    """Hands out per-instance network identities from a monotonic counter

    The counter is advanced once per allocation. Once it reaches the last
    usable host address, slots released after a confirmed stop are reused
    lowest first; with none free, allocation is refused.
    """

    def __init__(self, subnet, gateway, socket_path_prefix, counter_start=3):
        self.subnet = ipaddress.ip_network(subnet)
        if self.subnet.version != 4 or self.subnet.prefixlen < 24:
            raise ValueError(f"Subnet must be an IPv4 /24 or smaller, got {self.subnet}")
        self.gateway = ipaddress.ip_address(gateway)
        self.socket_path_prefix = socket_path_prefix

        # Network, gateway and broadcast are never handed out
        self._reserved = {0, self.subnet.num_addresses - 1}
        if self.gateway in self.subnet:
            self._reserved.add(int(self.gateway) - int(self.subnet.network_address))
        self._last_slot = self.subnet.num_addresses - 2

        self._lock = threading.Lock()
        self._counter = counter_start
        self._live = set()
        self._free = set()

    @property
    def counter(self):
        return self._counter

    def identity_for(self, slot):
        """Derive the IP, MAC, tap device and socket path for a slot"""
        return NetworkIdentity(
            slot=slot,
            ip=str(self.subnet.network_address + slot),
            mac=f"{MAC_PREFIX}:{slot:02x}",
            tap_device=f"{TAP_PREFIX}{slot}",
            socket_path=str(Path(self.socket_path_prefix) / f"firecracker-{slot}.sock"),
        )

    def allocate(self):
        """Allocate the next network identity

        Returns:
            NetworkIdentity: identity not held by any live instance

        Raises:
            AllocationExhaustedError: if every usable slot is live
        """
        with self._lock:
            slot = self._next_slot()
            self._live.add(slot)
        identity = self.identity_for(slot)
        logger.debug(f"Allocated slot {slot}: {identity.ip} on {identity.tap_device}")
        return identity

    def _next_slot(self):
        while self._counter < self._last_slot:
            self._counter += 1
            slot = self._counter
            if slot not in self._reserved and slot not in self._live:
                return slot

        if self._free:
            slot = min(self._free)
            self._free.discard(slot)
            return slot

        raise AllocationExhaustedError(
            f"No free addresses left in {self.subnet} ({len(self._live)} instances live)"
        )

    def release(self, identity):
        """Return a slot to the pool once its instance is gone"""
        with self._lock:
            if identity.slot not in self._live:
                return
            self._live.discard(identity.slot)
            self._free.add(identity.slot)
        logger.debug(f"Released slot {identity.slot} ({identity.ip})")

    def in_use(self):
        with self._lock:
            return set(self._live)


class NetworkManager:
    """Manages TAP devices for microVM instances"""

    def __init__(self, use_sudo=False):
        self.use_sudo = use_sudo

    def _run_command(self, cmd, check=True, capture_output=True, text=True):
        """Helper method to run subprocess commands with consistent error handling"""
        if self.use_sudo:
            cmd = ["sudo"] + list(cmd)
        try:
            return subprocess.run(cmd, check=check, capture_output=capture_output, text=text)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            logger.error(f"Command failed: {' '.join(cmd)}: {stderr or e}")
            raise
        except OSError as e:
            logger.error(f"Unexpected error running command: {' '.join(cmd)}: {e}")
            raise

    def tap_device_exists(self, device_name):
        result = self._run_command(["ip", "link", "show", device_name], check=False)
        return result.returncode == 0

    def _setup_step(self, step, cmd, device_name, check=True):
        try:
            return self._run_command(cmd, check=check)
        except (subprocess.CalledProcessError, OSError) as e:
            stderr = getattr(e, 'stderr', None)
            detail = stderr.strip() if stderr else str(e)
            self.remove_tap_device(device_name)
            raise NetworkSetupError(f"Failed {step} for {device_name}: {detail}", step=step) from e

    def provision_tap_device(self, identity):
        """Create and configure the TAP device for one instance

        Stale links and sockets left behind by a previous run of the same
        slot are removed first. If any later step fails, the link created
        here is deleted again before the error is raised.

        Args:
            identity: NetworkIdentity of the instance

        Raises:
            NetworkSetupError: naming the step that failed
        """
        device = identity.tap_device

        # A missing link is the normal case here
        result = self._setup_step("removing stale link", ["ip", "link", "del", device], device, check=False)
        if result.returncode == 0:
            logger.info(f"Removed stale TAP device {device}")

        self._setup_step("creating tap device", ["ip", "tuntap", "add", "dev", device, "mode", "tap"], device)

        try:
            self.remove_socket_file(identity.socket_path)
        except OSError as e:
            self.remove_tap_device(device)
            raise NetworkSetupError(
                f"Failed to delete old socket path {identity.socket_path}: {e}", step="removing socket"
            ) from e

        self._setup_step("bringing link up", ["ip", "link", "set", device, "up"], device)
        self._setup_step(
            "enabling proxy_arp", ["sysctl", "-w", f"net.ipv4.conf.{device}.proxy_arp=1"], device
        )
        self._setup_step(
            "disabling ipv6", ["sysctl", "-w", f"net.ipv6.conf.{device}.disable_ipv6=1"], device
        )

        logger.info(f"✓ TAP device {device} ready for {identity.ip}")

    def remove_tap_device(self, tap_device):
        """Remove TAP device, returning False if the removal failed"""
        try:
            if self.tap_device_exists(tap_device):
                self._run_command(["ip", "link", "del", tap_device])
                logger.info(f"✓ TAP device {tap_device} removed")
            return True
        except (subprocess.CalledProcessError, OSError) as e:
            logger.error(f"Error removing TAP device {tap_device}: {e}")
            return False

    def remove_socket_file(self, socket_path):
        socket_file = Path(socket_path)
        if socket_file.exists() or socket_file.is_symlink():
            socket_file.unlink()
            logger.info(f"Removed stale socket file: {socket_path}")
