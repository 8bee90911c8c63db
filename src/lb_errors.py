# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Exceptions raised while reconciling load balancers."""

from __future__ import annotations


class LoadBalancerError(Exception):
    """Base class for every load balancer reconciliation failure."""


class ConfigError(LoadBalancerError, ValueError):
    """Raised when user configuration is invalid."""


class InvalidOption(ConfigError):
    """Raised when a load balancer annotation has an unusable value."""

    def __init__(self, key: str, value: str, reason: str):
        super().__init__(f"invalid value {value!r} for {key}: {reason}")
        self.key = key
        self.value = value
        self.reason = reason


class NotFoundError(LoadBalancerError):
    """Raised when a backing instance does not exist."""


class StoreError(LoadBalancerError):
    """Raised when the compute API cannot complete a request."""


class TransientStoreError(StoreError):
    """Raised when a request kept failing until the retry budget ran out."""

    def __init__(self, method: str, path: str, attempts: int, last_error: str):
        super().__init__(
            f"{method} {path} failed after {attempts} attempt(s): {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


class StoreRejectedError(StoreError):
    """Raised when the compute API definitively rejects a request."""

    def __init__(self, method: str, path: str, status_code: int, body: str):
        super().__init__(f"{method} {path} was rejected with HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class RemoteChannelError(LoadBalancerError):
    """Raised when an SSH or SFTP operation fails."""


class ProvisioningTimeout(LoadBalancerError):
    """Raised when an instance does not accept SSH sessions in time."""


class RemoteCommandError(LoadBalancerError):
    """Raised when a remote command exits with a non-zero status."""

    def __init__(self, command: str, exit_status: int, output: str):
        super().__init__(f"command {command!r} exited with status {exit_status}")
        self.command = command
        self.exit_status = exit_status
        self.output = output


class ReloadError(LoadBalancerError):
    """Raised when HAProxy refuses to reload an uploaded configuration.

    The configuration file stays on the instance; the next reconciliation
    pass uploads and reloads again.
    """

    def __init__(self, address: str, output: str):
        super().__init__(f"failed to reload haproxy on {address}: {output.strip()}")
        self.address = address
        self.output = output


class InconsistentStateError(LoadBalancerError):
    """Raised when a backing instance exists but cannot be reached."""
