# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Resolution of load balancer annotations into validated options.

Annotations are free-form strings on the Service. They are parsed once, here,
into a :class:`LoadBalancerOptions` record; nothing downstream looks at the
raw strings again. A value outside its documented bounds is rejected and
never clamped.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass

from lb_errors import InvalidOption

ANNOTATION_PREFIX = "loadbalancer.cloud/"

ANNO_ALGORITHM = ANNOTATION_PREFIX + "algorithm"
ANNO_CLIENT_TIMEOUT = ANNOTATION_PREFIX + "client-timeout"
ANNO_SERVER_TIMEOUT = ANNOTATION_PREFIX + "server-timeout"
ANNO_CONNECTION_LIMIT = ANNOTATION_PREFIX + "connection-limit"
ANNO_PROXY_PROTOCOL = ANNOTATION_PREFIX + "enable-proxy-protocol"
ANNO_HEALTH_CHECK_INTERVAL = ANNOTATION_PREFIX + "health-check-interval"
ANNO_HEALTH_CHECK_TIMEOUT = ANNOTATION_PREFIX + "health-check-timeout"
ANNO_HEALTHY_THRESHOLD = ANNOTATION_PREFIX + "health-check-threshold-healthy"
ANNO_UNHEALTHY_THRESHOLD = ANNOTATION_PREFIX + "health-check-threshold-unhealthy"
ANNO_PROTOCOL = ANNOTATION_PREFIX + "protocol"
ANNO_HEALTH_CHECK_PATH = ANNOTATION_PREFIX + "health-check-path"
ANNO_STICKY_SESSIONS = ANNOTATION_PREFIX + "sticky-sessions"


class Algorithm(str, enum.Enum):
    """Balancing algorithms, valued by their HAProxy keyword."""

    LEAST_CONNECTIONS = "leastconn"
    ROUND_ROBIN = "roundrobin"
    SOURCE_HASH = "source"


class Protocol(str, enum.Enum):
    TCP = "tcp"
    HTTP = "http"
    HTTPS = "https"


class StickySessions(str, enum.Enum):
    NONE = "none"
    SOURCE_IP = "source-ip"


@dataclass(frozen=True)
class LoadBalancerOptions:
    algorithm: Algorithm = Algorithm.ROUND_ROBIN
    client_timeout: int = 30
    server_timeout: int = 60
    connection_limit: int = 1000
    proxy_protocol: bool = False
    health_check_interval: int = 3
    health_check_timeout: int = 5
    healthy_threshold: int = 5
    unhealthy_threshold: int = 3
    protocol: Protocol = Protocol.TCP
    health_check_path: str = "/"
    sticky_sessions: StickySessions = StickySessions.NONE


_BOOLEANS = {"true": True, "false": False}


def _raw(raw: Mapping[str, str], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _int_option(raw: Mapping[str, str], key: str, default: int, low: int, high: int) -> int:
    value = _raw(raw, key)
    if value is None:
        return default
    try:
        number = int(value, 10)
    except ValueError:
        raise InvalidOption(key, value, "not an integer") from None
    if not (low <= number <= high):
        raise InvalidOption(key, value, f"must be between {low} and {high}")
    return number


def _bool_option(raw: Mapping[str, str], key: str, default: bool) -> bool:
    value = _raw(raw, key)
    if value is None:
        return default
    try:
        return _BOOLEANS[value.lower()]
    except KeyError:
        raise InvalidOption(key, value, "must be 'true' or 'false'") from None


def _enum_option(raw: Mapping[str, str], key: str, enum_type: type[enum.Enum], default):
    value = _raw(raw, key)
    if value is None:
        return default
    try:
        return enum_type(value)
    except ValueError:
        supported = ", ".join(member.value for member in enum_type)
        raise InvalidOption(key, value, f"must be one of: {supported}") from None


def _path_option(raw: Mapping[str, str], key: str, default: str) -> str:
    value = _raw(raw, key)
    if value is None:
        return default
    if not value.startswith("/"):
        raise InvalidOption(key, value, "must be an absolute path")
    if any(ch.isspace() for ch in value):
        raise InvalidOption(key, value, "must not contain whitespace")
    return value


def resolve_options(raw: Mapping[str, str] | None) -> LoadBalancerOptions:
    """Validate load balancer annotations and fill in defaults.

    Keys outside the ``loadbalancer.cloud/`` set are ignored. Raises
    :class:`lb_errors.InvalidOption` for the first unusable value.
    """
    raw = raw or {}
    return LoadBalancerOptions(
        algorithm=_enum_option(raw, ANNO_ALGORITHM, Algorithm, Algorithm.ROUND_ROBIN),
        client_timeout=_int_option(raw, ANNO_CLIENT_TIMEOUT, 30, 1, 86400),
        server_timeout=_int_option(raw, ANNO_SERVER_TIMEOUT, 60, 1, 86400),
        connection_limit=_int_option(raw, ANNO_CONNECTION_LIMIT, 1000, 1, 20000),
        proxy_protocol=_bool_option(raw, ANNO_PROXY_PROTOCOL, False),
        health_check_interval=_int_option(raw, ANNO_HEALTH_CHECK_INTERVAL, 3, 3, 300),
        health_check_timeout=_int_option(raw, ANNO_HEALTH_CHECK_TIMEOUT, 5, 3, 300),
        healthy_threshold=_int_option(raw, ANNO_HEALTHY_THRESHOLD, 5, 2, 10),
        unhealthy_threshold=_int_option(raw, ANNO_UNHEALTHY_THRESHOLD, 3, 2, 10),
        protocol=_enum_option(raw, ANNO_PROTOCOL, Protocol, Protocol.TCP),
        health_check_path=_path_option(raw, ANNO_HEALTH_CHECK_PATH, "/"),
        sticky_sessions=_enum_option(
            raw, ANNO_STICKY_SESSIONS, StickySessions, StickySessions.NONE
        ),
    )


@dataclass(frozen=True)
class CapacityTier:
    """Compute package backing a load balancer, chosen by connection limit."""

    name: str
    package_id: str
    cores: int


TIER_A = CapacityTier("A", "89833c1dfa7010", 1)
TIER_B = CapacityTier("B", "e991abd8ef15c7", 2)
TIER_C = CapacityTier("C", "9559dbb4b71c45", 4)


def capacity_tier(connection_limit: int) -> CapacityTier:
    if connection_limit <= 1000:
        return TIER_A
    if connection_limit <= 10000:
        return TIER_B
    return TIER_C
