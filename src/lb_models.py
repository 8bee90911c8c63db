# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Value types shared by the load balancer engine and its callers."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

EXTERNAL_IP = "ExternalIP"


@dataclass(frozen=True)
class PortBinding:
    """A public port on the load balancer and the node port behind it."""

    listen_port: int
    target_port: int
    protocol: str = "TCP"


@dataclass(frozen=True)
class TargetEndpoint:
    """One backend address the load balancer forwards to."""

    address: str
    port: int


@dataclass(frozen=True)
class NodeAddress:
    """An address reported by a cluster node, e.g. ``ExternalIP``."""

    type: str
    address: str


@dataclass(frozen=True)
class ServiceSnapshot:
    """Read-only view of the Service a load balancer is requested for."""

    uid: str
    name: str
    namespace: str
    ports: tuple[PortBinding, ...]
    annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class LoadBalancerStatus:
    """Addresses on which a load balancer accepts traffic."""

    ingress: tuple[str, ...] = ()


def _address_sort_key(address: str) -> tuple[int, int]:
    ip = ipaddress.ip_address(address)
    return (ip.version, int(ip))


def external_addresses(nodes: Iterable[NodeAddress]) -> list[str]:
    """Return the distinct, valid ``ExternalIP`` addresses in canonical order.

    IPv4 sorts before IPv6 and addresses compare numerically, so the result
    does not depend on the order in which nodes were listed.
    """
    found: set[str] = set()
    for node_address in nodes:
        if node_address.type != EXTERNAL_IP:
            continue
        try:
            found.add(str(ipaddress.ip_address(node_address.address.strip())))
        except ValueError:
            continue
    return sorted(found, key=_address_sort_key)


def target_endpoints(
    bindings: Sequence[PortBinding], addresses: Sequence[str]
) -> list[TargetEndpoint]:
    """Cross node addresses with the distinct target ports of ``bindings``."""
    ports: list[int] = []
    for binding in bindings:
        if binding.target_port not in ports:
            ports.append(binding.target_port)
    return [TargetEndpoint(address, port) for port in ports for address in addresses]
