#!/usr/bin/env python3
"""Signal-driven shutdown of running microVMs.

SIGINT and SIGTERM ask every attached guest to shut down (Ctrl+Alt+Del) and
escalate to a forced stop after ``shutdown_timeout`` seconds. SIGQUIT stops
every VMM immediately without asking the guest. ``cleanup`` force-stops
whatever is still registered when the process exits.
"""

import signal
import threading
from concurrent.futures import ThreadPoolExecutor

from .errors import FirecrackerAPIError
from .log import get_logger
from .models import InstanceState

logger = get_logger(__name__)

GRACEFUL_SIGNALS = (signal.SIGINT, signal.SIGTERM)
FORCE_SIGNALS = (signal.SIGQUIT,)


def signal_name(signum):
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


class ShutdownController:
    """Applies graceful or forced shutdown to the instances attached to it"""

    def __init__(self, registry, shutdown_timeout=10, max_workers=16):
        self.registry = registry
        self.shutdown_timeout = shutdown_timeout
        self.max_workers = max_workers

        self._lock = threading.RLock()
        self._attached = {}
        self._installed = False
        self._passes = {}

    def attach(self, instance):
        """Put an instance under signal control; attaching twice is a no-op"""
        with self._lock:
            if instance.id in self._attached:
                return False
            self._attached[instance.id] = instance
            return True

    def detach(self, instance_id):
        with self._lock:
            return self._attached.pop(instance_id, None) is not None

    def attached(self):
        with self._lock:
            return list(self._attached.values())

    def install(self, on_signal=None, signums=FORCE_SIGNALS):
        """Install process signal handlers once

        Must be called from the main thread. SIGINT and SIGTERM are normally
        delivered by the HTTP server's exit hook instead of being installed
        here, so the server keeps its own shutdown handling.

        Args:
            on_signal: optional callable(signum) run after the shutdown pass starts
            signums: signals to install handlers for
        """
        with self._lock:
            if self._installed:
                return False
            self._installed = True

        def handler(signum, _frame):
            self.handle_signal(signum)
            if on_signal is not None:
                on_signal(signum)

        for signum in signums:
            signal.signal(signum, handler)
        logger.debug(f"Installed handlers for {', '.join(signal_name(s) for s in signums)}")
        return True

    def handle_signal(self, signum):
        """Start a shutdown pass for a signal in the background

        Returns:
            threading.Thread: the pass, or None if one of the same kind is
                already running
        """
        force = signum in FORCE_SIGNALS
        kind = "force" if force else "graceful"
        with self._lock:
            running = self._passes.get(kind)
            if running is not None and running.is_alive():
                logger.info(f"Caught {signal_name(signum)}, {kind} shutdown already in progress")
                return None
            thread = threading.Thread(
                target=self._run_pass,
                args=(signum, force),
                name=f"{kind}-shutdown",
                daemon=True,
            )
            self._passes[kind] = thread

        thread.start()
        return thread

    def _run_pass(self, signum, force):
        instances = self.attached()
        if force:
            logger.warning(f"Caught {signal_name(signum)}, forcing shutdown of {len(instances)} instance(s)")
            stop = self.force_stop
        else:
            logger.info(f"Caught {signal_name(signum)}, requesting clean shutdown of {len(instances)} instance(s)")
            stop = self.graceful_stop
        self._stop_all(instances, stop)

    def _stop_all(self, instances, stop):
        if not instances:
            return
        workers = max(1, min(self.max_workers, len(instances)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vm-stop") as pool:
            futures = {pool.submit(stop, instance): instance for instance in instances}
        for future, instance in futures.items():
            error = future.exception()
            if error is not None:
                logger.error(f"Stopping instance {instance.id} failed: {error}")

    def graceful_stop(self, instance):
        """Ask the guest to shut down, forcing a stop if it does not exit in time

        Returns:
            bool: True if the guest shut down on its own
        """
        self.registry.transition(instance.id, InstanceState.STOPPING)
        machine = instance.machine
        try:
            machine.shutdown()
        except FirecrackerAPIError as e:
            logger.warning(f"Clean shutdown request for {instance.id} failed: {e}")
        else:
            if machine.wait(timeout=self.shutdown_timeout) is not None:
                logger.info(f"✓ Instance {instance.id} shut down cleanly")
                return True
            logger.warning(f"Instance {instance.id} did not shut down within {self.shutdown_timeout}s")

        self.force_stop(instance)
        return False

    def force_stop(self, instance):
        """Stop the instance's VMM without guest cooperation"""
        self.registry.transition(instance.id, InstanceState.STOPPING)
        instance.machine.stop_vmm()
        logger.info(f"✓ Instance {instance.id} stopped")

    def wait_for_passes(self, timeout=None):
        with self._lock:
            passes = list(self._passes.values())
        for thread in passes:
            thread.join(timeout)

    def cleanup(self):
        """Force-stop every registered instance, best effort

        Waits for a signal-driven pass that is already running first.
        Per-instance failures are logged and skipped.
        """
        self.wait_for_passes(timeout=self.shutdown_timeout + 5)

        instances = self.registry.snapshot()
        if not instances:
            return
        logger.info(f"Cleaning up {len(instances)} instance(s)")
        for instance in instances:
            try:
                self.force_stop(instance)
            except Exception as e:
                logger.error(f"Cleanup of instance {instance.id} failed: {e}")
