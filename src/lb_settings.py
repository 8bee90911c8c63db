# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Process-wide settings: compute API credentials and the SSH key pair.

Values come from the charm config and fall back to environment variables.
Key material is base64 encoded in both places.
"""

from __future__ import annotations

import base64
import binascii
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from lb_errors import ConfigError

DEFAULT_CLUSTER_NAME = "kubernetes"
DEFAULT_LOCATION = "dk1"
DEFAULT_SERVER_TEMPLATE = "ubuntu-18.04-x64"

# charm config key -> environment variable
ENVIRONMENT = {
    "api-endpoint": "LB_API_ENDPOINT",
    "api-key": "LB_API_KEY",
    "ssh-private-key": "LB_SSH_PRIVATE_KEY",
    "ssh-public-key": "LB_SSH_PUBLIC_KEY",
    "cluster-name": "LB_CLUSTER_NAME",
    "location": "LB_LOCATION",
    "server-template": "LB_SERVER_TEMPLATE",
}


@dataclass(frozen=True)
class CloudSettings:
    api_endpoint: str
    api_key: str = field(repr=False)
    ssh_private_key: str = field(repr=False)
    ssh_public_key: str
    cluster_name: str = DEFAULT_CLUSTER_NAME
    location: str = DEFAULT_LOCATION
    server_template: str = DEFAULT_SERVER_TEMPLATE


def _value(config: Mapping[str, Any], environ: Mapping[str, str], key: str) -> str:
    value = str(config.get(key) or "").strip()
    if not value:
        value = environ.get(ENVIRONMENT[key], "").strip()
    return value


def _required(config: Mapping[str, Any], environ: Mapping[str, str], key: str) -> str:
    value = _value(config, environ, key)
    if not value:
        raise ConfigError(f"{key} must be set (or {ENVIRONMENT[key]} in the environment)")
    return value


def _decode_key(name: str, encoded: str) -> str:
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ConfigError(f"{name} must be base64 encoded") from e


def load_settings(
    config: Mapping[str, Any], environ: Mapping[str, str] | None = None
) -> CloudSettings:
    """Build :class:`CloudSettings` from charm config with environment fallback."""
    environ = os.environ if environ is None else environ
    endpoint = _required(config, environ, "api-endpoint")
    if not endpoint.startswith(("https://", "http://")):
        raise ConfigError("api-endpoint must be an http(s) URL")
    return CloudSettings(
        api_endpoint=endpoint,
        api_key=_required(config, environ, "api-key"),
        ssh_private_key=_decode_key(
            "ssh-private-key", _required(config, environ, "ssh-private-key")
        ),
        ssh_public_key=_decode_key(
            "ssh-public-key", _required(config, environ, "ssh-public-key")
        ).strip(),
        cluster_name=_value(config, environ, "cluster-name") or DEFAULT_CLUSTER_NAME,
        location=_value(config, environ, "location") or DEFAULT_LOCATION,
        server_template=_value(config, environ, "server-template") or DEFAULT_SERVER_TEMPLATE,
    )
