"""Shared fixtures: fake Firecracker engine, recording host commands, temp config."""

import subprocess
import threading
import time

import pytest

from fcsandbox.config_manager import ConfigManager
from fcsandbox.errors import EngineStartError
from fcsandbox.models import Instance, InstanceState
from fcsandbox.network_manager import NetworkAllocator, NetworkManager
from fcsandbox.registry import InstanceRegistry
from fcsandbox.shutdown import ShutdownController
from fcsandbox.vm_lifecycle import VMLifecycle


class FakeMachine:
    """Stands in for FirecrackerMachine; exits when told to"""

    def __init__(self, vm_config=None):
        self.vm_config = vm_config
        self.shutdown_calls = 0
        self.stop_calls = 0
        self.exit_on_shutdown = True
        self.shutdown_error = None
        self.stop_error = None
        self.closed = False
        self.exit_code = None
        self._exited = threading.Event()

    def exit(self, code):
        if not self._exited.is_set():
            self.exit_code = code
            self._exited.set()

    def shutdown(self):
        self.shutdown_calls += 1
        if self.shutdown_error is not None:
            raise self.shutdown_error
        if self.exit_on_shutdown:
            self.exit(0)

    def stop_vmm(self):
        self.stop_calls += 1
        if self.stop_error is not None:
            raise self.stop_error
        self.exit(-15)

    def wait(self, timeout=None):
        if self._exited.wait(timeout):
            return self.exit_code
        return None

    def is_running(self):
        return not self._exited.is_set()

    def close(self):
        self.closed = True


class FakeEngine:
    def __init__(self):
        self.machines = []
        self.fail = False

    def start(self, vm_config):
        if self.fail:
            raise EngineStartError("Firecracker exited with code 1 during startup")
        machine = FakeMachine(vm_config)
        self.machines.append(machine)
        return machine


class FakeHost:
    """Records privileged commands and tracks which links exist"""

    def __init__(self):
        self.commands = []
        self.links = set()
        self.fail_on = []
        self._lock = threading.Lock()

    def run(self, cmd, check=False, capture_output=False, text=False, **kwargs):
        cmd = list(cmd)
        with self._lock:
            self.commands.append(cmd)
            args = cmd[1:] if cmd[0] == "sudo" else cmd
            returncode, stderr = self._apply(args)
        if returncode != 0 and check:
            raise subprocess.CalledProcessError(returncode, cmd, output="", stderr=stderr)
        return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr=stderr)

    def _apply(self, args):
        joined = " ".join(args)
        if any(pattern in joined for pattern in self.fail_on):
            return 2, "RTNETLINK answers: Operation not permitted"
        if args[:3] == ["ip", "link", "show"]:
            if args[3] in self.links:
                return 0, ""
            return 1, f'Device "{args[3]}" does not exist.'
        if args[:3] == ["ip", "link", "del"]:
            if args[3] in self.links:
                self.links.discard(args[3])
                return 0, ""
            return 1, "Cannot find device"
        if args[:3] == ["ip", "tuntap", "add"]:
            device = args[4]
            if device in self.links:
                return 1, "ioctl(TUNSETIFF): Device or resource busy"
            self.links.add(device)
        return 0, ""

    def commands_for(self, device):
        return [cmd for cmd in self.commands if any(device in part for part in cmd)]


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def fake_host(monkeypatch):
    host = FakeHost()
    monkeypatch.setattr("fcsandbox.network_manager.subprocess.run", host.run)
    return host


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def config_file(tmp_path):
    kernel = tmp_path / "vmlinux"
    kernel.write_bytes(b"\x7fELF")
    binary = tmp_path / "firecracker"
    binary.write_text("#!/bin/sh\necho Firecracker v1.7.0\n")

    path = tmp_path / "fcsandbox.env"
    path.write_text(
        "# test configuration\n"
        f"FIRECRACKER_BIN={binary}\n"
        f"KERNEL_IMAGE={kernel}\n"
        f"SOCKET_PATH_PREFIX={tmp_path / 'sockets'}\n"
        f"VM_LOG_PATH={tmp_path / 'logs'}\n"
        "SUBNET=172.17.0.0/24\n"
        "GATEWAY=172.17.0.1\n"
        "SHUTDOWN_TIMEOUT=0.5  # seconds\n"
    )
    (tmp_path / "sockets").mkdir()
    return path


@pytest.fixture
def config_manager(config_file):
    return ConfigManager(config_file=config_file)


@pytest.fixture
def registry():
    return InstanceRegistry()


@pytest.fixture
def controller(registry):
    return ShutdownController(registry, shutdown_timeout=0.5)


@pytest.fixture
def allocator(config_manager):
    return NetworkAllocator(
        config_manager.get_subnet(),
        config_manager.get_gateway(),
        config_manager.get_socket_path_prefix(),
        counter_start=config_manager.get_int('COUNTER_START'),
    )


@pytest.fixture
def lifecycle(config_manager, registry, allocator, controller, fake_host, fake_engine):
    manager = VMLifecycle(config_manager, registry, allocator, NetworkManager(), fake_engine, controller)
    yield manager
    for instance in registry.snapshot():
        instance.machine.exit(0)
    manager.join_watchers(timeout=2)


@pytest.fixture
def make_instance(tmp_path):
    """Factory for detached Instance objects with a FakeMachine"""
    allocator = NetworkAllocator("172.17.0.0/24", "172.17.0.1", str(tmp_path))

    def _make(slot, instance_id=None, state=InstanceState.RUNNING):
        instance = Instance(
            id=instance_id or f"{slot:08X}-0000-0000-0000-000000000000",
            network=allocator.identity_for(slot),
            root_drive_path="/images/rootfs.ext4",
            vcpu_count=1,
            mem_size_mib=512,
            machine=FakeMachine(),
            state=state,
        )
        return instance

    return _make
