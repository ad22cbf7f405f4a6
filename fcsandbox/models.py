#!/usr/bin/env python3
"""Data structures shared by the orchestrator modules."""

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional


class InstanceState(str, enum.Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class NetworkIdentity:
    """Network identity derived from one allocation slot"""

    slot: int
    ip: str
    mac: str
    tap_device: str
    socket_path: str


@dataclass
class VMConfig:
    """Everything Firecracker needs to boot one guest"""

    vm_id: str
    socket_path: str
    kernel_image_path: str
    kernel_args: str
    root_drive_path: str
    tap_device: str
    guest_mac: str
    vcpu_count: int
    mem_size_mib: int
    log_path: Optional[str] = None

    def machine_config(self):
        return {"vcpu_count": self.vcpu_count, "mem_size_mib": self.mem_size_mib}

    def boot_source(self):
        return {"kernel_image_path": self.kernel_image_path, "boot_args": self.kernel_args}

    def root_drive(self):
        return {
            "drive_id": "rootfs",
            "path_on_host": self.root_drive_path,
            "is_root_device": True,
            "is_read_only": False,
        }

    def network_interface(self):
        return {
            "iface_id": "eth0",
            "guest_mac": self.guest_mac,
            "host_dev_name": self.tap_device,
        }


@dataclass
class Instance:
    """One managed microVM sandbox

    ``machine`` is owned exclusively by this instance. ``cancel_scope`` is set
    once nothing should wait on the instance any more, and ``released`` once
    its host resources have been given back.
    """

    id: str
    network: NetworkIdentity
    root_drive_path: str
    vcpu_count: int
    mem_size_mib: int
    machine: Any = field(default=None, compare=False)
    state: InstanceState = InstanceState.PROVISIONING
    cancel_scope: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    created_at: float = field(default_factory=time.time)
    exit_code: Optional[int] = None
    released: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    _release_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _release_claimed: bool = field(default=False, repr=False, compare=False)

    @property
    def ip(self):
        return self.network.ip

    @property
    def tap_device(self):
        return self.network.tap_device

    @property
    def socket_path(self):
        return self.network.socket_path

    def claim_release(self):
        """Return True exactly once, for whoever releases this instance's resources"""
        with self._release_lock:
            if self._release_claimed:
                return False
            self._release_claimed = True
            return True

    def to_dict(self):
        return {
            "id": self.id,
            "ip_address": self.ip,
            "mac_address": self.network.mac,
            "tap_device": self.tap_device,
            "socket_path": self.socket_path,
            "root_image_path": self.root_drive_path,
            "vcpu_count": self.vcpu_count,
            "mem_size_mib": self.mem_size_mib,
            "state": self.state.value,
            "created_at": self.created_at,
            "exit_code": self.exit_code,
        }
