#!/usr/bin/env python3
"""Firecracker process management.

``FirecrackerEngine.start`` spawns one Firecracker process per instance and
boots it through the API socket. The returned ``FirecrackerMachine`` is the
only handle the rest of the orchestrator uses: shutdown (ask the guest),
stop_vmm (kill the VMM) and wait (block until the process exits).
"""

import subprocess
import time
from pathlib import Path

from .errors import EngineStartError, EngineStopError, FirecrackerAPIError
from .firecracker_api import FirecrackerAPI
from .log import get_logger

logger = get_logger(__name__)


class FirecrackerMachine:
    """A running (or starting) Firecracker VMM process"""

    def __init__(self, vm_config, binary, api=None, stop_timeout=5,
                 startup_retries=25, retry_delay=0.2):
        self.vm_config = vm_config
        self.binary = binary
        self.api = api or FirecrackerAPI(vm_config.socket_path)
        self.stop_timeout = stop_timeout
        self.startup_retries = startup_retries
        self.retry_delay = retry_delay
        self.process = None
        self._log_file = None

    @property
    def pid(self):
        return self.process.pid if self.process else None

    def _spawn(self):
        cmd = [self.binary, "--api-sock", self.vm_config.socket_path, "--id", self.vm_config.vm_id]
        output = subprocess.DEVNULL
        if self.vm_config.log_path:
            self._log_file = open(self.vm_config.log_path, "ab")
            output = self._log_file

        logger.info(f"Starting Firecracker: {' '.join(cmd)}")
        # Own session so a Ctrl+C on the orchestrator's terminal does not reach the VMMs
        self.process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    def _wait_for_socket(self):
        socket_file = Path(self.vm_config.socket_path)
        for attempt in range(self.startup_retries):
            if self.process.poll() is not None:
                raise EngineStartError(
                    f"Firecracker exited with code {self.process.returncode} during startup"
                )
            if socket_file.exists() and self.api.check_socket_in_use():
                logger.debug(f"✓ Firecracker is ready (attempt {attempt + 1})")
                return
            time.sleep(self.retry_delay)

        raise EngineStartError(
            f"Firecracker API socket {self.vm_config.socket_path} not ready after {self.startup_retries} attempts"
        )

    def _configure_and_boot(self):
        cfg = self.vm_config
        self.api.set_machine_config(cfg.vcpu_count, cfg.mem_size_mib)
        self.api.set_boot_source(cfg.kernel_image_path, cfg.kernel_args)
        self.api.set_rootfs(cfg.root_drive())
        self.api.set_network_interface("eth0", cfg.tap_device, cfg.guest_mac)
        self.api.start_microvm()

    def start(self):
        """Spawn Firecracker, configure it and boot the guest

        Raises:
            EngineStartError: the process is killed before this is raised
        """
        try:
            self._spawn()
        except OSError as e:
            self.close()
            raise EngineStartError(f"Failed to spawn {self.binary}: {e}") from e

        try:
            self._wait_for_socket()
            self._configure_and_boot()
        except (EngineStartError, FirecrackerAPIError) as e:
            self._kill_quietly()
            if isinstance(e, EngineStartError):
                raise
            raise EngineStartError(f"Failed to start machine: {e}") from e

        logger.info(f"✓ MicroVM {self.vm_config.vm_id} started (pid {self.pid})")
        return self

    def shutdown(self):
        """Request a cooperative guest shutdown via Ctrl+Alt+Del"""
        self.api.send_ctrl_alt_del()

    def stop_vmm(self):
        """Stop the VMM process without guest cooperation

        Raises:
            EngineStopError: if the process could not be signalled
        """
        if not self.is_running():
            return
        try:
            self.process.terminate()
            try:
                self.process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Firecracker pid {self.pid} ignored SIGTERM, killing")
                self.process.kill()
                self.process.wait()
        except OSError as e:
            raise EngineStopError(f"Failed to stop Firecracker pid {self.pid}: {e}") from e

    def wait(self, timeout=None):
        """Wait for the VMM to exit

        Returns:
            int: exit code, or None if it is still running after ``timeout``
        """
        if self.process is None:
            return None
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def is_running(self):
        return self.process is not None and self.process.poll() is None

    def close(self):
        """Release the API session and console log handle"""
        self.api.close()
        if self._log_file:
            self._log_file.close()
            self._log_file = None

    def _kill_quietly(self):
        try:
            if self.is_running():
                self.process.kill()
                self.process.wait()
        except OSError as e:
            logger.warning(f"Could not kill Firecracker pid {self.pid}: {e}")
        finally:
            self.close()


class FirecrackerEngine:
    """Starts FirecrackerMachine instances from a VMConfig"""

    def __init__(self, binary, stop_timeout=5, startup_retries=25, retry_delay=0.2):
        self.binary = binary
        self.stop_timeout = stop_timeout
        self.startup_retries = startup_retries
        self.retry_delay = retry_delay

    def start(self, vm_config):
        machine = FirecrackerMachine(
            vm_config,
            self.binary,
            stop_timeout=self.stop_timeout,
            startup_retries=self.startup_retries,
            retry_delay=self.retry_delay,
        )
        return machine.start()
