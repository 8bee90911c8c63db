# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""SSH and SFTP access to backing instances.

A channel moves through ``UNREACHABLE`` (no TCP connection), ``REACHABLE``
(port 22 answers), ``SESSION_ESTABLISHED`` (authenticated) and ``CLOSED``.
:meth:`RemoteShell.wait_until_ready` is the only place that waits on the
wall clock; it gives up after ``max_wait`` seconds.
"""

from __future__ import annotations

import enum
import io
import logging
import posixpath
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass

import paramiko

from lb_errors import (
    ConfigError,
    ProvisioningTimeout,
    RemoteChannelError,
    RemoteCommandError,
)
from lb_events import EventSink, LoggingEventSink

SSH_PORT = 22
SSH_USER = "root"

_KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class ChannelState(str, enum.Enum):
    UNREACHABLE = "unreachable"
    REACHABLE = "reachable"
    SESSION_ESTABLISHED = "session-established"
    CLOSED = "closed"


@dataclass(frozen=True)
class CommandResult:
    command: str
    exit_status: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def load_private_key(text: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key of any type paramiko supports."""
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError):
            continue
    raise ConfigError("ssh private key could not be parsed")


class RemoteSession:
    """An authenticated SSH connection with a lazily opened SFTP channel."""

    def __init__(self, client: paramiko.SSHClient, address: str, events: EventSink):
        self._client = client
        self._sftp: paramiko.SFTPClient | None = None
        self._events = events
        self.address = address
        self.state = ChannelState.SESSION_ESTABLISHED

    def __enter__(self) -> RemoteSession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _require_open(self) -> None:
        if self.state is ChannelState.CLOSED:
            raise RemoteChannelError(f"session to {self.address} is closed")

    def run(self, command: str, *, check: bool = True, timeout: float | None = None) -> CommandResult:
        """Run ``command`` and capture its combined stdout/stderr and exit status."""
        self._require_open()
        self._events.emit("remote.run", address=self.address, command=command.split()[0])
        try:
            _, stdout, _ = self._client.exec_command(command, timeout=timeout)
            stdout.channel.set_combined_stderr(True)
            output = stdout.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteChannelError(f"failed to run command on {self.address}: {e}") from e

        result = CommandResult(command, exit_status, output)
        if check and not result.ok:
            self._events.emit(
                "remote.command_failed",
                level=logging.ERROR,
                address=self.address,
                exit_status=exit_status,
                output=output.strip()[-2000:],
            )
            raise RemoteCommandError(command, exit_status, output)
        return result

    def _transfer(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            try:
                self._sftp = self._client.open_sftp()
            except (paramiko.SSHException, OSError) as e:
                raise RemoteChannelError(f"failed to open sftp to {self.address}: {e}") from e
        return self._sftp

    def _makedirs(self, sftp: paramiko.SFTPClient, directory: str) -> None:
        missing = []
        while directory not in ("", "/"):
            try:
                sftp.stat(directory)
                break
            except FileNotFoundError:
                missing.append(directory)
                directory = posixpath.dirname(directory)
        for path in reversed(missing):
            sftp.mkdir(path)

    def upload(self, path: str, contents: str, *, mode: int | None = None) -> None:
        """Write ``contents`` to the absolute ``path``, creating parent directories."""
        self._require_open()
        if not posixpath.isabs(path):
            raise ValueError(f"remote path must be absolute: {path!r}")
        self._events.emit("remote.upload", address=self.address, path=path)
        sftp = self._transfer()
        try:
            self._makedirs(sftp, posixpath.dirname(path))
            with sftp.open(path, "w") as remote_file:
                remote_file.write(contents)
            if mode is not None:
                sftp.chmod(path, mode)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteChannelError(f"failed to upload {path} to {self.address}: {e}") from e

    def close(self) -> None:
        if self.state is ChannelState.CLOSED:
            return
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        self._client.close()
        self.state = ChannelState.CLOSED


class RemoteShell:
    """Opens :class:`RemoteSession` objects to backing instances."""

    def __init__(
        self,
        *,
        private_key: paramiko.PKey | None = None,
        username: str = SSH_USER,
        port: int = SSH_PORT,
        connect_timeout: float = 10.0,
        poll_interval: float = 10.0,
        max_wait: float = 300.0,
        open_attempts: int = 3,
        open_delay: float = 5.0,
        events: EventSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        socket_factory: Callable[..., socket.socket] = socket.create_connection,
    ):
        self._private_key = private_key
        self._username = username
        self._port = port
        self._connect_timeout = connect_timeout
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._open_attempts = open_attempts
        self._open_delay = open_delay
        self._events = events or LoggingEventSink()
        self._clock = clock
        self._sleep = sleep
        self._client_factory = client_factory
        self._socket_factory = socket_factory

    def connect(self, address: str, *, password: str | None = None) -> RemoteSession:
        """Make a single connection attempt.

        Uses ``password`` when given, the configured key pair otherwise.
        """
        if password is None and self._private_key is None:
            raise ConfigError("no ssh private key configured")
        try:
            sock = self._socket_factory((address, self._port), timeout=self._connect_timeout)
        except OSError as e:
            self._events.emit(
                "remote.state", address=address, state=ChannelState.UNREACHABLE.value
            )
            raise RemoteChannelError(f"{address}:{self._port} is unreachable: {e}") from e
        self._events.emit("remote.state", address=address, state=ChannelState.REACHABLE.value)

        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                address,
                port=self._port,
                username=self._username,
                password=password,
                pkey=None if password is not None else self._private_key,
                sock=sock,
                timeout=self._connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            sock.close()
            raise RemoteChannelError(f"ssh to {address} failed: {e}") from e

        self._events.emit(
            "remote.state", address=address, state=ChannelState.SESSION_ESTABLISHED.value
        )
        return RemoteSession(client, address, self._events)

    def open(self, address: str) -> RemoteSession:
        """Open a key-authenticated session with a small fixed retry count."""
        attempt = 1
        while True:
            try:
                return self.connect(address)
            except RemoteChannelError as e:
                if attempt >= self._open_attempts:
                    raise
                self._events.emit(
                    "remote.retry",
                    level=logging.WARNING,
                    address=address,
                    attempt=attempt,
                    error=str(e),
                )
            self._sleep(self._open_delay)
            attempt += 1

    def wait_until_ready(
        self,
        address: str,
        *,
        password: str | None = None,
        max_wait: float | None = None,
    ) -> RemoteSession:
        """Poll ``address`` every ``poll_interval`` seconds until a session opens.

        Raises :class:`lb_errors.ProvisioningTimeout` once ``max_wait`` seconds
        have passed without a successful connection.
        """
        max_wait = self._max_wait if max_wait is None else max_wait
        deadline = self._clock() + max_wait
        self._events.emit("remote.wait", address=address, max_wait=max_wait)

        while True:
            try:
                return self.connect(address, password=password)
            except RemoteChannelError as e:
                last_error = e

            remaining = deadline - self._clock()
            if remaining <= 0:
                self._events.emit(
                    "remote.timeout", level=logging.ERROR, address=address, error=str(last_error)
                )
                raise ProvisioningTimeout(
                    f"{address} did not accept ssh sessions within {max_wait:g}s: {last_error}"
                ) from last_error
            self._sleep(min(self._poll_interval, remaining))
