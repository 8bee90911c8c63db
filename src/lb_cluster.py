# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Kubernetes side of load balancer reconciliation.

This module contains the non-charm-specific logic used by the charm to find
Services of type `LoadBalancer`, drive them through the
:class:`lb_controller.LoadBalancerController` and publish the resulting
ingress addresses on the Service status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from lb_controller import LoadBalancerController
from lb_errors import ConfigError, LoadBalancerError
from lb_models import LoadBalancerStatus, NodeAddress, PortBinding, ServiceSnapshot
from lb_settings import CloudSettings

logger = logging.getLogger(__name__)

FINALIZER = "loadbalancer.cloud/cleanup"
LOAD_BALANCER = "LoadBalancer"


def _lightkube():
    try:
        import lightkube
        from lightkube.core.exceptions import ApiError
        from lightkube.resources.core_v1 import Node, Service
        from lightkube.types import PatchType
    except ModuleNotFoundError as e:  # pragma: nocover
        raise ConfigError(
            "missing runtime dependency 'lightkube' (repack the charm after updating uv.lock)"
        ) from e
    return lightkube, ApiError, Node, Service, PatchType


@dataclass
class ReconcileSummary:
    ready: int = 0
    deleted: int = 0
    failed: dict[str, str] = field(default_factory=dict)


def service_snapshot(svc: Any) -> ServiceSnapshot:
    """Convert a lightkube Service into the engine's read-only snapshot."""
    meta = svc.metadata
    key = f"{meta.namespace}/{meta.name}"
    bindings = []
    for port in (svc.spec.ports if svc.spec else None) or []:
        if not port.nodePort:
            raise ConfigError(f"service {key} port {port.port} has no node port allocated")
        bindings.append(
            PortBinding(listen_port=port.port, target_port=port.nodePort, protocol=port.protocol or "TCP")
        )
    return ServiceSnapshot(
        uid=meta.uid or "",
        name=meta.name,
        namespace=meta.namespace,
        ports=tuple(bindings),
        annotations=dict(meta.annotations or {}),
    )


def node_addresses(nodes: Any) -> list[NodeAddress]:
    result = []
    for node in nodes:
        for address in (node.status.addresses if node.status else None) or []:
            result.append(NodeAddress(type=address.type, address=address.address))
    return result


def _is_load_balancer(svc: Any) -> bool:
    return svc.spec is not None and svc.spec.type == LOAD_BALANCER


def _current_ingress(svc: Any) -> tuple[str, ...]:
    status = svc.status
    if status is None or status.loadBalancer is None:
        return ()
    return tuple(i.ip for i in status.loadBalancer.ingress or [] if i.ip)


def _set_finalizers(client: Any, svc: Any, finalizers: list[str]) -> None:
    _, _, _, Service, PatchType = _lightkube()
    client.patch(
        Service,
        svc.metadata.name,
        {"metadata": {"finalizers": finalizers}},
        namespace=svc.metadata.namespace,
        patch_type=PatchType.MERGE,
    )


def _set_ingress(client: Any, svc: Any, status: LoadBalancerStatus) -> None:
    if _current_ingress(svc) == status.ingress:
        return
    _, _, _, Service, PatchType = _lightkube()
    client.patch(
        Service.Status,
        svc.metadata.name,
        {"status": {"loadBalancer": {"ingress": [{"ip": ip} for ip in status.ingress]}}},
        namespace=svc.metadata.namespace,
        patch_type=PatchType.MERGE,
    )
    logger.info(
        "published ingress %s for Service %s/%s",
        ",".join(status.ingress),
        svc.metadata.namespace,
        svc.metadata.name,
    )


def _cleanup(client: Any, controller: LoadBalancerController, cluster_name: str, svc: Any) -> None:
    meta = svc.metadata
    snapshot = ServiceSnapshot(uid=meta.uid or "", name=meta.name, namespace=meta.namespace, ports=())
    controller.delete(cluster_name, snapshot)
    remaining = [f for f in meta.finalizers or [] if f != FINALIZER]
    _set_finalizers(client, svc, remaining)
    logger.info("deleted load balancer for Service %s/%s", meta.namespace, meta.name)


def _open(settings: CloudSettings, field_manager: str, client: Any, controller: Any):
    if client is None:
        lightkube, _, _, _, _ = _lightkube()
        client = lightkube.Client(field_manager=field_manager)
    owned = controller is None
    if owned:
        controller = LoadBalancerController.from_settings(settings)
    return client, controller, owned


def reconcile_load_balancers(
    *,
    settings: CloudSettings,
    field_manager: str,
    client: Any = None,
    controller: LoadBalancerController | None = None,
) -> ReconcileSummary:
    """Ensure every LoadBalancer Service has an up to date backing instance.

    Services that are being deleted, or are no longer of type LoadBalancer,
    lose their backing instance and the cleanup finalizer. A failure on one
    Service is recorded in the summary and does not stop the others.
    """
    _, ApiError, Node, Service, _ = _lightkube()
    client, controller, owned = _open(settings, field_manager, client, controller)
    summary = ReconcileSummary()
    try:
        nodes = node_addresses(client.list(Node))
        for svc in client.list(Service, namespace="*"):
            meta = svc.metadata
            key = f"{meta.namespace}/{meta.name}"
            finalizers = list(meta.finalizers or [])
            try:
                if not _is_load_balancer(svc) or meta.deletionTimestamp is not None:
                    if FINALIZER in finalizers:
                        _cleanup(client, controller, settings.cluster_name, svc)
                        summary.deleted += 1
                    continue

                snapshot = service_snapshot(svc)
                if FINALIZER not in finalizers:
                    _set_finalizers(client, svc, finalizers + [FINALIZER])
                status = controller.ensure(settings.cluster_name, snapshot, nodes)
                _set_ingress(client, svc, status)
                summary.ready += 1
            except (LoadBalancerError, ApiError) as e:
                logger.error("failed to reconcile load balancer for Service %s: %s", key, e)
                summary.failed[key] = str(e)
    finally:
        if owned:
            controller.close()
    return summary


def delete_load_balancers(
    *,
    settings: CloudSettings,
    field_manager: str,
    client: Any = None,
    controller: LoadBalancerController | None = None,
) -> ReconcileSummary:
    """Delete the backing instance of every Service carrying the cleanup finalizer."""
    _, ApiError, _, Service, _ = _lightkube()
    client, controller, owned = _open(settings, field_manager, client, controller)
    summary = ReconcileSummary()
    try:
        for svc in client.list(Service, namespace="*"):
            meta = svc.metadata
            if FINALIZER not in (meta.finalizers or []):
                continue
            try:
                _cleanup(client, controller, settings.cluster_name, svc)
                summary.deleted += 1
            except ApiError as e:
                if e.status.code == 404:
                    summary.deleted += 1
                    continue
                summary.failed[f"{meta.namespace}/{meta.name}"] = str(e)
            except LoadBalancerError as e:
                logger.error(
                    "failed to delete load balancer for Service %s/%s: %s",
                    meta.namespace,
                    meta.name,
                    e,
                )
                summary.failed[f"{meta.namespace}/{meta.name}"] = str(e)
    finally:
        if owned:
            controller.close()
    return summary
