"""
Firecracker Sandbox Orchestrator Library

This package contains the core modules for running microVM sandboxes behind
an HTTP API:
- identifiers: random instance IDs
- network_manager: per-instance address allocation and TAP device setup
- firecracker_api: API client for the Firecracker unix socket
- machine: Firecracker process start/stop/wait
- registry: thread-safe table of live instances
- exit_watcher: per-instance background exit monitoring
- vm_lifecycle: instance create, delete and list
- shutdown: signal-driven graceful and forced shutdown
- config_manager: env-file configuration and preflight checks
- api: FastAPI application
"""

__version__ = "1.0.0"

# Import main classes for convenience
from .config_manager import ConfigManager
from .errors import SandboxError
from .firecracker_api import FirecrackerAPI
from .machine import FirecrackerEngine, FirecrackerMachine
from .network_manager import NetworkAllocator, NetworkManager
from .registry import InstanceRegistry
from .shutdown import ShutdownController
from .vm_lifecycle import VMLifecycle
from .api import create_app

__all__ = [
    'ConfigManager',
    'SandboxError',
    'FirecrackerAPI',
    'FirecrackerEngine',
    'FirecrackerMachine',
    'NetworkAllocator',
    'NetworkManager',
    'InstanceRegistry',
    'ShutdownController',
    'VMLifecycle',
    'create_app',
]
