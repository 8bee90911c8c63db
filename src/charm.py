#!/usr/bin/env python3
# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""A charm that backs Kubernetes LoadBalancer Services with HAProxy instances.

The charm runs no workload of its own. On every hook it reconciles all
Services of type `LoadBalancer` in the cluster against virtual machines in
the compute API, each running HAProxy, and publishes their addresses on the
Service status. Credentials come from config options (or the environment):

- `api-endpoint`, `api-key`: compute API access
- `ssh-private-key`, `ssh-public-key`: base64 encoded key pair used to
  configure the instances
- `cluster-name`, `location`, `server-template`: instance naming and placement
"""

import logging
import os

import ops
from ops.model import ActiveStatus, BlockedStatus, MaintenanceStatus, WaitingStatus

import lb_cluster
import lb_errors
import lb_settings

logger = logging.getLogger(__name__)


class LoadBalancerControllerCharm(ops.CharmBase):
    """Create, update and delete HAProxy instances for LoadBalancer Services."""

    def __init__(self, framework: ops.Framework):
        super().__init__(framework)

        self.framework.observe(self.on.install, self._on_reconcile)
        self.framework.observe(self.on.config_changed, self._on_reconcile)
        self.framework.observe(self.on.upgrade_charm, self._on_reconcile)
        self.framework.observe(self.on.update_status, self._on_reconcile)
        self.framework.observe(self.on.remove, self._on_remove)

    def _on_reconcile(self, event: ops.EventBase) -> None:
        if not self.unit.is_leader():
            self.unit.status = WaitingStatus("waiting for leader to reconcile load balancers")
            return

        self.unit.status = MaintenanceStatus("reconciling load balancers")
        try:
            settings = lb_settings.load_settings(self.config, os.environ)
            summary = lb_cluster.reconcile_load_balancers(
                settings=settings,
                field_manager=self.app.name,
            )
        except lb_errors.ConfigError as e:
            logger.error("invalid configuration: %s", e)
            self.unit.status = BlockedStatus(str(e))
            return
        except Exception as e:  # pragma: nocover
            logger.exception("failed to reconcile load balancers")
            self.unit.status = BlockedStatus(f"failed to reconcile load balancers: {e}")
            return

        if summary.failed:
            self.unit.status = WaitingStatus(
                f"{len(summary.failed)} load balancer(s) failed, retrying on next update"
            )
            return
        self.unit.status = ActiveStatus(f"{summary.ready} load balancer(s) ready")

    def _on_remove(self, event: ops.RemoveEvent) -> None:
        if not self.unit.is_leader():
            return
        try:
            settings = lb_settings.load_settings(self.config, os.environ)
            lb_cluster.delete_load_balancers(
                settings=settings,
                field_manager=self.app.name,
            )
        except Exception:  # pragma: nocover
            logger.exception("failed to delete load balancers")


if __name__ == "__main__":  # pragma: nocover
    ops.main(LoadBalancerControllerCharm)
