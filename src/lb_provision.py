# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Commands and files that turn a fresh instance into an HAProxy node."""

from __future__ import annotations

import shlex
import textwrap

from lb_errors import RemoteCommandError, ReloadError
from lb_remote import RemoteSession

PATH_APT_AUTO_CONF = "/etc/apt/apt.conf.d/00auto-conf"
PATH_HAPROXY_CONFIG = "/etc/haproxy/haproxy.cfg"
PATH_HAPROXY_OVERRIDE = "/etc/systemd/system/haproxy.service.d/override.conf"
PATH_PROVISION_SCRIPT = "/tmp/load_balancer_provisioner.sh"
PATH_SECURITY_LIMITS = "/etc/security/limits.conf"
PATH_SYSCTL_CONF = "/etc/sysctl.d/20-maximum-performance.conf"

RELOAD_COMMAND = "systemctl reload haproxy"

APT_AUTO_CONF = textwrap.dedent(
    """\
    Dpkg::Options {
    \t"--force-confdef";
    \t"--force-confold";
    }
    """
)

HAPROXY_OVERRIDE = textwrap.dedent(
    """\
    [Service]
    LimitNOFILE=1048576
    """
)

SECURITY_LIMITS = "".join(
    f"{user} {kind} {item} {value}\n"
    for user in ("*", "haproxy")
    for item, value in (
        ("nproc", "1048576"),
        ("nofile", "1048576"),
        ("stack", "1048576"),
        ("memlock", "unlimited"),
    )
    for kind in ("soft", "hard")
)

SYSCTL_CONF = textwrap.dedent(
    """\
    fs.file-max=1048576
    fs.inotify.max_user_instances=1048576
    fs.inotify.max_user_watches=1048576
    fs.nr_open=1048576
    net.core.netdev_max_backlog=1048576
    net.core.rmem_max=16777216
    net.core.somaxconn=65535
    net.core.wmem_max=16777216
    net.ipv4.tcp_congestion_control=htcp
    net.ipv4.ip_local_port_range=32768 65535
    net.ipv4.tcp_fin_timeout=5
    net.ipv4.tcp_max_orphans=1048576
    net.ipv4.tcp_max_syn_backlog=20480
    net.ipv4.tcp_max_tw_buckets=400000
    net.ipv4.tcp_no_metrics_save=1
    net.ipv4.tcp_rmem=4096 87380 16777216
    net.ipv4.tcp_synack_retries=2
    net.ipv4.tcp_syn_retries=2
    net.ipv4.tcp_tw_reuse=1
    net.ipv4.tcp_wmem=4096 65535 16777216
    vm.max_map_count=1048576
    vm.min_free_kbytes=65535
    vm.overcommit_memory=1
    vm.swappiness=0
    vm.vfs_cache_pressure=50
    """
)

PROVISION_SCRIPT = textwrap.dedent(
    """\
    #!/bin/bash
    set -e

    export DEBIAN_FRONTEND=noninteractive

    sysctl --system

    while fuser /var/lib/apt/lists/lock >/dev/null 2>&1 || fuser /var/lib/dpkg/lock >/dev/null 2>&1; do
    \tsleep 2
    done

    add-apt-repository -y ppa:vbernat/haproxy-2.0
    apt-get -qq update
    apt-get -qq install -y haproxy=2.0.\\*
    """
)


def system_setup_command(public_key: str) -> str:
    """Shell command that hardens a fresh instance and authorizes ``public_key``."""
    steps = [
        "mkdir -p ~/.ssh",
        f"echo {shlex.quote(public_key.strip())} >> ~/.ssh/authorized_keys",
        "sed -i 's/#\\?PasswordAuthentication.*/PasswordAuthentication no/' /etc/ssh/sshd_config",
        "systemctl restart ssh",
        "swapoff -a",
        "sed -i '/ swap / s/^/#/' /etc/fstab",
        "export DEBIAN_FRONTEND=noninteractive",
        "while fuser /var/lib/apt/lists/lock >/dev/null 2>&1; do sleep 1; done",
        "while fuser /var/lib/dpkg/lock >/dev/null 2>&1; do sleep 1; done",
        "apt-get -qq update",
        "apt-get -qq upgrade -y",
        "apt-get -qq dist-upgrade -y",
        "apt-get -qq install -y apt-transport-https ca-certificates software-properties-common",
    ]
    return " && ".join(steps)


def prepare_system(session: RemoteSession, public_key: str) -> None:
    """Configure apt, authorize the controller key and disable password logins."""
    session.upload(PATH_APT_AUTO_CONF, APT_AUTO_CONF)
    session.run(system_setup_command(public_key))


def install_load_balancer(session: RemoteSession) -> None:
    session.upload(PATH_HAPROXY_OVERRIDE, HAPROXY_OVERRIDE)
    session.upload(PATH_SECURITY_LIMITS, SECURITY_LIMITS)
    session.upload(PATH_SYSCTL_CONF, SYSCTL_CONF)
    session.upload(PATH_PROVISION_SCRIPT, PROVISION_SCRIPT, mode=0o700)
    session.run(f"/bin/bash {PATH_PROVISION_SCRIPT}")


def apply_configuration(session: RemoteSession, config_text: str) -> None:
    session.upload(PATH_HAPROXY_CONFIG, config_text, mode=0o644)


def reload_load_balancer(session: RemoteSession) -> None:
    """Reload HAProxy; the uploaded configuration is kept if this fails."""
    try:
        session.run(RELOAD_COMMAND)
    except RemoteCommandError as e:
        raise ReloadError(session.address, e.output) from e
