#!/usr/bin/env python3

import threading
from pathlib import Path

from .config_manager import DEFAULT_KERNEL_ARGS
from .errors import EngineStopError, InstanceNotFoundError, InvalidRequestError
from .exit_watcher import ExitWatcher
from .identifiers import generate_instance_id
from .log import get_logger
from .machine import FirecrackerEngine
from .models import Instance, InstanceState, VMConfig
from .network_manager import NetworkAllocator, NetworkManager
from .registry import InstanceRegistry

logger = get_logger(__name__)


def build_kernel_cmdline(ip, gateway, netmask, base_args=DEFAULT_KERNEL_ARGS):
    """Build the guest kernel command line with a static eth0 configuration

    The guest reaches the host through proxy ARP on its tap device, so the
    address, gateway and mask here must match what the host was set up with.
    """
    return f"{base_args} ip={ip}::{gateway}:{netmask}::eth0:off"


class VMLifecycle:
    """Creates, deletes and lists microVM instances"""

    def __init__(self, config_manager, registry, allocator, network_manager, engine,
                 shutdown_controller=None):
        self.config_manager = config_manager
        self.registry = registry
        self.allocator = allocator
        self.network_manager = network_manager
        self.engine = engine
        self.shutdown_controller = shutdown_controller

        self.kernel_image = config_manager.get('KERNEL_IMAGE')
        self.kernel_args = config_manager.get('KERNEL_ARGS', DEFAULT_KERNEL_ARGS)
        self.gateway = str(config_manager.get_gateway())
        self.netmask = str(config_manager.get_subnet().netmask)
        self.default_cpus = config_manager.get_int('CPUS')
        self.default_memory = config_manager.get_int('MEMORY')
        self.vm_log_path = config_manager.get_vm_log_path()

        self.release_timeout = 5
        self._watchers = {}
        self._watchers_lock = threading.Lock()

    @classmethod
    def from_config(cls, config_manager, registry=None, shutdown_controller=None):
        """Wire the default Firecracker-backed collaborators from configuration"""
        registry = registry or InstanceRegistry()
        allocator = NetworkAllocator(
            config_manager.get_subnet(),
            config_manager.get_gateway(),
            config_manager.get_socket_path_prefix(),
            counter_start=config_manager.get_int('COUNTER_START'),
        )
        network_manager = NetworkManager(use_sudo=config_manager.get_bool('USE_SUDO'))
        engine = FirecrackerEngine(
            config_manager.get('FIRECRACKER_BIN'),
            stop_timeout=config_manager.get_float('STOP_TIMEOUT'),
        )
        return cls(config_manager, registry, allocator, network_manager, engine, shutdown_controller)

    def build_vm_config(self, instance_id, identity, root_drive_path, vcpu_count, mem_size_mib):
        """Build the Firecracker configuration for one instance"""
        log_path = None
        if self.vm_log_path:
            log_path = str(Path(self.vm_log_path) / f"firecracker-{identity.slot}.log")

        return VMConfig(
            vm_id=instance_id,
            socket_path=identity.socket_path,
            kernel_image_path=self.kernel_image,
            kernel_args=build_kernel_cmdline(identity.ip, self.gateway, self.netmask, self.kernel_args),
            root_drive_path=root_drive_path,
            tap_device=identity.tap_device,
            guest_mac=identity.mac,
            vcpu_count=vcpu_count,
            mem_size_mib=mem_size_mib,
            log_path=log_path,
        )

    def create(self, root_drive_path, vcpu_count=None, mem_size_mib=None):
        """Provision networking, boot a microVM and register it

        Args:
            root_drive_path: path of the root filesystem image on the host
            vcpu_count: vCPUs, defaults to CPUS from the configuration
            mem_size_mib: memory in MiB, defaults to MEMORY from the configuration

        Returns:
            Instance: the registered, running instance

        Raises:
            SandboxError: nothing is registered and host-side network state
                created for the attempt is removed again
        """
        if not root_drive_path:
            raise InvalidRequestError("root_image_path must not be empty")
        vcpu_count = vcpu_count or self.default_cpus
        mem_size_mib = mem_size_mib or self.default_memory
        if vcpu_count <= 0 or mem_size_mib <= 0:
            raise InvalidRequestError("vcpu_count and mem_size_mib must be positive")

        instance_id = generate_instance_id()
        identity = self.allocator.allocate()
        instance = Instance(
            id=instance_id,
            network=identity,
            root_drive_path=root_drive_path,
            vcpu_count=vcpu_count,
            mem_size_mib=mem_size_mib,
        )
        logger.info(f"Creating instance {instance_id} on {identity.tap_device} ({identity.ip})")

        try:
            self.network_manager.provision_tap_device(identity)
            vm_config = self.build_vm_config(instance_id, identity, root_drive_path, vcpu_count, mem_size_mib)
            instance.machine = self.engine.start(vm_config)
            instance.state = InstanceState.RUNNING

            # Attach and track the watcher before the ID becomes visible to delete
            if self.shutdown_controller is not None:
                self.shutdown_controller.attach(instance)
            watcher = ExitWatcher(instance, self.handle_exit)
            with self._watchers_lock:
                self._watchers[instance_id] = watcher

            self.registry.add(instance)
        except Exception:
            self._abort_create(instance)
            raise

        watcher.start()

        logger.info(f"✓ Instance {instance_id} running at {identity.ip}")
        return instance

    def _abort_create(self, instance):
        identity = instance.network
        logger.error(f"Creating instance {instance.id} failed, cleaning up {identity.tap_device}")

        machine = instance.machine
        if machine is not None:
            try:
                machine.stop_vmm()
            except EngineStopError as e:
                logger.error(f"Could not stop Firecracker for {instance.id}: {e}")
            machine.close()

        self.network_manager.remove_tap_device(identity.tap_device)
        try:
            self.network_manager.remove_socket_file(identity.socket_path)
        except OSError as e:
            logger.warning(f"Could not remove socket file {identity.socket_path}: {e}")

        if self.shutdown_controller is not None:
            self.shutdown_controller.detach(instance.id)
        with self._watchers_lock:
            self._watchers.pop(instance.id, None)

        instance.state = InstanceState.STOPPED
        instance.claim_release()
        self.allocator.release(identity)
        instance.released.set()

    def delete(self, instance_id):
        """Stop an instance immediately and deregister it

        Raises:
            InstanceNotFoundError: if no live instance has this ID
            EngineStopError: the instance stays registered so delete can be retried
        """
        instance = self.registry.transition(instance_id, InstanceState.STOPPING)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")

        logger.info(f"Deleting instance {instance_id}")
        try:
            instance.machine.stop_vmm()
        except EngineStopError:
            self.registry.transition(instance_id, InstanceState.RUNNING)
            raise

        instance.cancel_scope.set()
        self.registry.remove(instance_id)
        self._release(instance, instance.machine.wait(timeout=0))
        # The exit watcher may be releasing concurrently
        instance.released.wait(self.release_timeout)
        logger.info(f"✓ Instance {instance_id} deleted")

    def handle_exit(self, instance, exit_code):
        """Reap an instance whose VMM process has exited"""
        removed = self.registry.remove(instance.id)
        if removed is not None and instance.state != InstanceState.STOPPING:
            logger.warning(f"Instance {instance.id} exited on its own with code {exit_code}")
        else:
            logger.info(f"Instance {instance.id} exited with code {exit_code}")
        self._release(instance, exit_code)

    def _release(self, instance, exit_code):
        # Delete and the exit watcher can both get here; only the first one releases
        if not instance.claim_release():
            return

        instance.state = InstanceState.STOPPED
        if exit_code is not None:
            instance.exit_code = exit_code
        if self.shutdown_controller is not None:
            self.shutdown_controller.detach(instance.id)

        identity = instance.network
        if not self.network_manager.remove_tap_device(identity.tap_device):
            logger.warning(f"TAP device {identity.tap_device} left behind; it is removed on the next use of slot {identity.slot}")
        try:
            self.network_manager.remove_socket_file(identity.socket_path)
        except OSError as e:
            logger.warning(f"Could not remove socket file {identity.socket_path}: {e}")

        instance.machine.close()
        self.allocator.release(identity)
        with self._watchers_lock:
            self._watchers.pop(instance.id, None)
        instance.released.set()

    def get_instance(self, instance_id):
        instance = self.registry.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        return instance

    def list_instances(self):
        """Get all registered instances, oldest first"""
        return sorted(self.registry.snapshot(), key=lambda instance: instance.created_at)

    def join_watchers(self, timeout=None):
        """Wait for exit watchers to finish releasing resources"""
        with self._watchers_lock:
            watchers = list(self._watchers.values())
        for watcher in watchers:
            watcher.join(timeout)
        with self._watchers_lock:
            return len(self._watchers) == 0
