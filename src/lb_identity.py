# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Stable naming of backing instances.

The hostname is the only link between a Service and its backing instance, so
it must stay the same across calls and upgrades: it depends on nothing but
the cluster name and the Service UID.
"""

from __future__ import annotations

import hashlib
import re

HOSTNAME_TEMPLATE = "k8s-load-balancer-{digest}"
MAX_TOKEN_LENGTH = 32
MAX_HOSTNAME_LENGTH = 63

_NOT_CLUSTER_CHAR = re.compile(r"[^a-z0-9-]")
_NOT_TOKEN_CHAR = re.compile(r"[^a-z0-9]")


def sanitize_cluster_name(cluster_name: str) -> str:
    """Lowercase ``cluster_name`` and replace characters unsafe in hostnames."""
    name = _NOT_CLUSTER_CHAR.sub("-", cluster_name.lower())
    return name[:MAX_TOKEN_LENGTH]


def balancer_name(uid: str) -> str:
    """Derive the balancer identity token from a Service UID."""
    return _NOT_TOKEN_CHAR.sub("", uid.lower())[:MAX_TOKEN_LENGTH]


def derive_hostname(cluster_name: str, name: str) -> str:
    digest = hashlib.md5(
        (sanitize_cluster_name(cluster_name) + name).encode("utf-8")
    ).hexdigest()
    return HOSTNAME_TEMPLATE.format(digest=digest)
