# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Rendering of the HAProxy configuration file.

The output is a pure function of its arguments. Bindings and endpoints are
emitted in the order given; callers that want order-independent output sort
them first (see :func:`lb_models.external_addresses`).

HAProxy refuses to start on a malformed file, so the layout is fixed:
section keywords at column zero, directives indented with one tab, a blank
line between groups of directives and after the global and defaults
sections, and a trailing newline. Listen sections follow each other
directly.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Sequence

from lb_models import PortBinding, TargetEndpoint
from lb_options import CapacityTier, LoadBalancerOptions, Protocol, StickySessions

THREADS_PER_PROCESS = 2
CONNECT_TIMEOUT = "5s"

_GLOBAL_HEADER = (
    (
        "log /dev/log local0 info alert",
        "log /dev/log local1 notice alert",
    ),
    ("chroot /var/lib/haproxy",),
    (
        "stats socket /run/haproxy/admin.sock mode 660 level admin expose-fd listeners",
        "stats timeout 30s",
    ),
    (
        "user haproxy",
        "group haproxy",
    ),
    (
        "ca-base /etc/ssl/certs",
        "crt-base /etc/ssl/private",
    ),
    (
        "ssl-default-bind-ciphers ECDH+AESGCM:DH+AESGCM:ECDH+AES256:DH+AES256:"
        "ECDH+AES128:DH+AES:RSA+AESGCM:RSA+AES:!aNULL:!MD5:!DSS",
        "ssl-default-bind-options no-sslv3",
    ),
)


def _section(keyword: str, groups: Sequence[Sequence[str]]) -> str:
    lines = [keyword]
    for index, group in enumerate(g for g in groups if g):
        if index:
            lines.append("")
        lines.extend(f"\t{directive}" for directive in group)
    return "\n".join(lines) + "\n"


def _host_port(address: str, port: int) -> str:
    if ipaddress.ip_address(address).version == 6:
        return f"[{address}]:{port}"
    return f"{address}:{port}"


def connections_per_process(options: LoadBalancerOptions, tier: CapacityTier) -> int:
    return max(1, options.connection_limit // tier.cores)


def render_global(tier: CapacityTier) -> str:
    processes = (
        f"nbproc {tier.cores}",
        f"nbthread {THREADS_PER_PROCESS}",
    )
    cpu_map = tuple(f"cpu-map {i} {i}" for i in range(1, tier.cores + 1))
    return _section("global", (*_GLOBAL_HEADER, processes, cpu_map))


def render_defaults(options: LoadBalancerOptions, tier: CapacityTier) -> str:
    mode = "http" if options.protocol is Protocol.HTTP else "tcp"
    return _section(
        "defaults",
        (
            (
                f"balance {options.algorithm.value}",
                "log global",
                f"maxconn {connections_per_process(options, tier)}",
                f"mode {mode}",
            ),
            (
                f"timeout check {options.health_check_timeout}s",
                f"timeout client {options.client_timeout}s",
                f"timeout connect {CONNECT_TIMEOUT}",
                f"timeout server {options.server_timeout}s",
            ),
        ),
    )


def _health_check(options: LoadBalancerOptions) -> str:
    if options.protocol is Protocol.HTTP:
        return f"option httpchk GET {options.health_check_path}"
    if options.protocol is Protocol.HTTPS:
        return "option ssl-hello-chk"
    return "option tcp-check"


def _server_line(
    endpoint: TargetEndpoint, options: LoadBalancerOptions, tier: CapacityTier
) -> str:
    # server names may not contain brackets
    name = f"{endpoint.address}:{endpoint.port}"
    line = (
        f"server {name} {_host_port(endpoint.address, endpoint.port)}"
        f" maxconn {connections_per_process(options, tier)}"
        f" check inter {options.health_check_interval}s"
        f" fall {options.unhealthy_threshold}"
        f" rise {options.healthy_threshold}"
    )
    if options.proxy_protocol:
        line += " send-proxy"
    return line


def render_listen(
    binding: PortBinding,
    endpoints: Sequence[TargetEndpoint],
    options: LoadBalancerOptions,
    tier: CapacityTier,
) -> str:
    checks = [_health_check(options)]
    if options.sticky_sessions is StickySessions.SOURCE_IP:
        checks += ["stick-table type ip size 1m expire 30m", "stick on src"]
    servers = [
        _server_line(endpoint, options, tier)
        for endpoint in endpoints
        if endpoint.port == binding.target_port
    ]
    return _section(
        f"listen {binding.listen_port}",
        ((f"bind 0.0.0.0:{binding.listen_port}",), checks, servers),
    )


def render_config(
    options: LoadBalancerOptions,
    tier: CapacityTier,
    bindings: Sequence[PortBinding],
    endpoints: Sequence[TargetEndpoint],
) -> str:
    """Render the complete ``haproxy.cfg`` text."""
    text = "\n".join([render_global(tier), render_defaults(options, tier)])
    listens = "".join(render_listen(b, endpoints, options, tier) for b in bindings)
    if listens:
        text += "\n" + listens
    return text
