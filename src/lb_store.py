# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Client for the compute API that hosts backing instances.

The API is the system of record: this client keeps no cache, and every
operation is safe to repeat.
"""

from __future__ import annotations

import enum
import logging
import secrets
import string
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from lb_errors import (
    InconsistentStateError,
    LoadBalancerError,
    NotFoundError,
    StoreRejectedError,
    TransientStoreError,
)
from lb_events import EventSink, LoggingEventSink

COLLECTION = "cloudservers"
PASSWORD_ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 64


class InstanceState(str, enum.Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    READY = "ready"
    DESTROYED = "destroyed"


@dataclass
class BackingInstance:
    identifier: str
    hostname: str
    interfaces: list[list[str]] = field(default_factory=list)
    package_id: str = ""
    state: InstanceState = InstanceState.READY
    initial_password: str | None = field(default=None, repr=False)

    @property
    def addresses(self) -> list[str]:
        """All addresses of all network interfaces, in API order."""
        return [address for interface in self.interfaces for address in interface]

    @property
    def primary_address(self) -> str:
        if not self.interfaces or not self.interfaces[0]:
            raise InconsistentStateError(
                f"instance {self.identifier} ({self.hostname}) has no network interface"
            )
        return self.interfaces[0][0]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> BackingInstance:
        interfaces = []
        for nic in payload.get("network_interfaces") or []:
            interfaces.append(
                [ip["address"] for ip in nic.get("ip_addresses") or [] if ip.get("address")]
            )
        package = payload.get("package") or {}
        if isinstance(package, dict):
            package = package.get("identifier", "")
        return cls(
            identifier=str(payload["identifier"]),
            hostname=str(payload.get("hostname", "")),
            interfaces=interfaces,
            package_id=str(package or ""),
        )


def generate_password() -> str:
    """Return a random root password that starts with a letter."""
    body = "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(PASSWORD_LENGTH - 1))
    return "p" + body


def _is_transient(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class CloudServerStore:
    """Create, look up and destroy backing instances."""

    def __init__(
        self,
        http: httpx.Client,
        *,
        template: str = "ubuntu-18.04-x64",
        attempts: int = 3,
        retry_delay: float = 5.0,
        destroy_attempts: int = 60,
        destroy_delay: float = 10.0,
        interface_attempts: int = 6,
        interface_delay: float = 5.0,
        events: EventSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        password_factory: Callable[[], str] = generate_password,
    ):
        self._http = http
        self._template = template
        self._attempts = attempts
        self._retry_delay = retry_delay
        self._destroy_attempts = destroy_attempts
        self._destroy_delay = destroy_delay
        self._interface_attempts = interface_attempts
        self._interface_delay = interface_delay
        self._events = events or LoggingEventSink()
        self._sleep = sleep
        self._password_factory = password_factory

    @classmethod
    def connect(
        cls,
        endpoint: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        **kwargs: Any,
    ) -> CloudServerStore:
        http = httpx.Client(
            base_url=endpoint.rstrip("/") + "/",
            headers={"X-Api-Key": api_key, "Accept": "application/json"},
            timeout=timeout,
        )
        return cls(http, **kwargs)

    def close(self) -> None:
        self._http.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        ok: Iterable[int] = (200,),
        attempts: int | None = None,
        delay: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        ok = tuple(ok)
        attempts = attempts or self._attempts
        delay = self._retry_delay if delay is None else delay
        last_error = "no attempt made"

        for attempt in range(1, attempts + 1):
            try:
                response = self._http.request(method, path, **kwargs)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status_code in ok:
                    return response
                if response.status_code == 404:
                    raise NotFoundError(f"{method} {path} returned HTTP 404")
                if not _is_transient(response.status_code):
                    raise StoreRejectedError(method, path, response.status_code, response.text)
                last_error = f"HTTP {response.status_code}"

            self._events.emit(
                "store.request_failed",
                level=logging.WARNING,
                method=method,
                path=path,
                attempt=attempt,
                attempts=attempts,
                error=last_error,
            )
            if attempt < attempts:
                self._sleep(delay)

        raise TransientStoreError(method, path, attempts, last_error)

    def find_by_hostname(self, hostname: str) -> BackingInstance | None:
        """Return the instance named ``hostname``, or None if there is none.

        The API filter is a substring match, so results are re-checked for an
        exact hostname.
        """
        if not hostname:
            raise ValueError("hostname must not be empty")
        response = self._request("GET", COLLECTION, params={"hostname": hostname})
        for payload in response.json():
            if payload.get("hostname") == hostname:
                return BackingInstance.from_payload(payload)
        return None

    def find_by_id(self, identifier: str) -> BackingInstance:
        if not identifier:
            raise ValueError("identifier must not be empty")
        response = self._request("GET", f"{COLLECTION}/{identifier}")
        return BackingInstance.from_payload(response.json())

    def create(self, location_id: str, package_id: str, hostname: str) -> BackingInstance:
        """Create an instance and wait until it reports a network interface.

        The request is sent once. If the instance never reports an address, or
        polling for it fails, the instance is destroyed before the error
        propagates.
        """
        password = self._password_factory()
        body = {
            "hostname": hostname,
            "label": hostname,
            "initial_root_password": password,
            "package": package_id,
            "template": self._template,
            "location": location_id,
        }
        self._events.emit(
            "instance.create", hostname=hostname, package=package_id, location=location_id
        )
        response = self._request("POST", COLLECTION, json=body, attempts=1)
        instance = BackingInstance.from_payload(response.json())

        identifier = instance.identifier
        try:
            remaining = self._interface_attempts
            while not instance.addresses and remaining > 0:
                remaining -= 1
                self._sleep(self._interface_delay)
                instance = self.find_by_id(identifier)

            if not instance.addresses:
                self._events.emit(
                    "instance.no_interfaces",
                    level=logging.ERROR,
                    hostname=hostname,
                    identifier=identifier,
                )
                raise InconsistentStateError(
                    f"no network interfaces were created for instance {identifier}"
                )
        except BaseException:
            self._discard(identifier)
            raise

        instance.package_id = instance.package_id or package_id
        instance.state = InstanceState.PROVISIONING
        instance.initial_password = password
        self._events.emit(
            "instance.created", hostname=hostname, identifier=instance.identifier
        )
        return instance

    def _discard(self, identifier: str) -> None:
        """Destroy an unusable instance without masking the error being raised."""
        try:
            self.destroy(identifier)
        except LoadBalancerError as e:
            self._events.emit(
                "instance.rollback_failed",
                level=logging.ERROR,
                identifier=identifier,
                error=str(e),
            )

    def destroy(self, identifier: str) -> None:
        """Destroy an instance; an instance that is already gone is not an error."""
        self._events.emit("instance.destroy", identifier=identifier)
        self._request(
            "DELETE",
            f"{COLLECTION}/{identifier}",
            ok=(200, 202, 204, 404),
            attempts=self._destroy_attempts,
            delay=self._destroy_delay,
        )
