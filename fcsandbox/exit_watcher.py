#!/usr/bin/env python3

import threading

from .log import get_logger

logger = get_logger(__name__)


class ExitWatcher:
    """Background thread that waits for one instance's VMM to exit

    On exit it sets the instance's cancel scope and reports the exit code to
    ``on_exit(instance, exit_code)`` so the registry follows engine liveness.
    """

    def __init__(self, instance, on_exit, poll_interval=1.0):
        self.instance = instance
        self.on_exit = on_exit
        self.poll_interval = poll_interval
        self._thread = threading.Thread(
            target=self._run,
            name=f"exit-watcher-{instance.network.slot}",
            daemon=True,
        )

    def start(self):
        self._thread.start()
        return self

    def cancel(self):
        """Stop waiting on the instance"""
        self.instance.cancel_scope.set()

    def join(self, timeout=None):
        if self._thread.ident is None:
            # Not started yet
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_alive(self):
        return self._thread.is_alive()

    def _run(self):
        instance = self.instance
        exit_code = None
        while not instance.cancel_scope.is_set():
            exit_code = instance.machine.wait(timeout=self.poll_interval)
            if exit_code is not None:
                break

        instance.cancel_scope.set()
        if exit_code is None:
            logger.debug(f"Stopped watching instance {instance.id}")
            return

        try:
            self.on_exit(instance, exit_code)
        except Exception:
            logger.exception(f"Exit handling failed for instance {instance.id}")
