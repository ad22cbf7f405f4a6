#!/usr/bin/env python3

import threading

from .errors import DuplicateInstanceError
from .log import get_logger
from .models import InstanceState

logger = get_logger(__name__)


class InstanceRegistry:
    """Thread-safe table of live instances keyed by instance ID

    The lock only guards bookkeeping; callers never hold it across engine or
    network calls.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._instances = {}

    def add(self, instance):
        """Register an instance

        Raises:
            DuplicateInstanceError: if the ID, IP, tap device or socket path
                belongs to another live instance
        """
        with self._lock:
            if instance.id in self._instances:
                raise DuplicateInstanceError(f"Instance {instance.id} is already registered")
            for other in self._instances.values():
                if other.ip == instance.ip:
                    raise DuplicateInstanceError(f"IP {instance.ip} is held by instance {other.id}")
                if other.tap_device == instance.tap_device:
                    raise DuplicateInstanceError(f"TAP device {instance.tap_device} is held by instance {other.id}")
                if other.socket_path == instance.socket_path:
                    raise DuplicateInstanceError(f"Socket {instance.socket_path} is held by instance {other.id}")
            self._instances[instance.id] = instance
        logger.debug(f"Registered instance {instance.id} ({instance.ip})")

    def get(self, instance_id):
        with self._lock:
            return self._instances.get(instance_id)

    def remove(self, instance_id):
        """Remove an instance, returning it or None if it was not registered"""
        with self._lock:
            instance = self._instances.pop(instance_id, None)
        if instance is not None:
            logger.debug(f"Deregistered instance {instance_id}")
        return instance

    def transition(self, instance_id, state):
        """Set the state of a registered instance

        Returns:
            Instance: the updated instance, or None if it is not registered
        """
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is not None:
                instance.state = InstanceState(state)
            return instance

    def snapshot(self):
        """Get a point-in-time list of all registered instances"""
        with self._lock:
            return list(self._instances.values())

    def __len__(self):
        with self._lock:
            return len(self._instances)

    def __contains__(self, instance_id):
        with self._lock:
            return instance_id in self._instances
