#!/usr/bin/env python3
"""Exceptions raised by the sandbox orchestrator.

Every per-request failure is a ``SandboxError`` carrying the HTTP status code
the API layer answers with. ``ConfigurationError`` is reserved for startup.
"""


class SandboxError(RuntimeError):
    """Base class for orchestrator errors scoped to a single request."""

    status_code = 500


class InvalidRequestError(SandboxError):
    status_code = 400


class IdentifierError(SandboxError):
    """The randomness source failed while generating an instance ID."""

    status_code = 500


class AllocationExhaustedError(SandboxError):
    """No free network slot is left in the subnet."""

    status_code = 503


class DuplicateInstanceError(SandboxError):
    """An ID, IP, tap device or socket path is already held by a live instance."""

    status_code = 409


class NetworkSetupError(SandboxError):
    """A privileged host network command failed."""

    status_code = 500

    def __init__(self, message, step=None):
        super().__init__(message)
        self.step = step


class EngineStartError(SandboxError):
    """Firecracker could not be spawned, configured or booted."""

    status_code = 502


class FirecrackerAPIError(SandboxError):
    """The Firecracker API socket answered with an error or did not answer."""

    status_code = 502

    def __init__(self, message, response_status=None):
        super().__init__(message)
        self.response_status = response_status


class InstanceNotFoundError(SandboxError):
    status_code = 404


class EngineStopError(SandboxError):
    status_code = 500


class ConfigurationError(RuntimeError):
    """Raised on unrecoverable startup configuration errors."""
