# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Reconciliation of load balancers against backing instances.

:class:`LoadBalancerController` exposes the four entry points a cluster
reconciler calls repeatedly: :meth:`~LoadBalancerController.get`,
:meth:`~LoadBalancerController.ensure`, :meth:`~LoadBalancerController.update`
and :meth:`~LoadBalancerController.delete`. Every call starts from scratch:
it derives the instance hostname, asks the compute API what exists and acts
on the answer. Nothing is cached between calls.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager

from lb_errors import ConfigError, InconsistentStateError, LoadBalancerError, NotFoundError
from lb_events import EventSink, LoggingEventSink
from lb_identity import balancer_name, derive_hostname
from lb_models import (
    LoadBalancerStatus,
    NodeAddress,
    PortBinding,
    ServiceSnapshot,
    external_addresses,
    target_endpoints,
)
from lb_options import LoadBalancerOptions, capacity_tier, resolve_options
from lb_provision import (
    apply_configuration,
    install_load_balancer,
    prepare_system,
    reload_load_balancer,
)
from lb_remote import RemoteShell, load_private_key
from lb_render import render_config
from lb_settings import CloudSettings
from lb_store import BackingInstance, CloudServerStore, InstanceState

SUPPORTED_PROTOCOLS = ("TCP",)


class _Lease:
    committed = False

    def commit(self) -> None:
        self.committed = True


def _validate_ports(service: ServiceSnapshot) -> tuple[PortBinding, ...]:
    if not service.ports:
        raise ConfigError(f"service {service.key} exposes no ports")
    for binding in service.ports:
        if binding.protocol.upper() not in SUPPORTED_PROTOCOLS:
            raise ConfigError(
                f"service {service.key} port {binding.listen_port} uses unsupported "
                f"protocol {binding.protocol}"
            )
        for name, port in (("port", binding.listen_port), ("node port", binding.target_port)):
            if not (1 <= port <= 65535):
                raise ConfigError(f"service {service.key} {name} {port} is out of range")
    return tuple(service.ports)


class LoadBalancerController:
    """Keep one HAProxy instance per Service in line with the Service spec."""

    def __init__(
        self,
        store: CloudServerStore,
        shell: RemoteShell,
        *,
        location: str,
        public_key: str,
        events: EventSink | None = None,
    ):
        self._store = store
        self._shell = shell
        self._location = location
        self._public_key = public_key
        self._events = events or LoggingEventSink()

    @classmethod
    def from_settings(
        cls, settings: CloudSettings, *, events: EventSink | None = None
    ) -> LoadBalancerController:
        events = events or LoggingEventSink()
        shell = RemoteShell(private_key=load_private_key(settings.ssh_private_key), events=events)
        store = CloudServerStore.connect(
            settings.api_endpoint,
            settings.api_key,
            template=settings.server_template,
            events=events,
        )
        return cls(
            store,
            shell,
            location=settings.location,
            public_key=settings.ssh_public_key,
            events=events,
        )

    def __enter__(self) -> LoadBalancerController:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._store.close()

    def name(self, service: ServiceSnapshot) -> str:
        return balancer_name(service.uid)

    def _hostname(self, cluster_name: str, service: ServiceSnapshot) -> str:
        return derive_hostname(cluster_name, self.name(service))

    def _status(self, instance: BackingInstance, service: ServiceSnapshot) -> LoadBalancerStatus:
        addresses = instance.addresses
        if not addresses:
            raise InconsistentStateError(
                f"no addresses available for load balancer {self.name(service)} "
                f"({instance.hostname})"
            )
        return LoadBalancerStatus(ingress=tuple(addresses))

    def get(
        self, cluster_name: str, service: ServiceSnapshot
    ) -> tuple[LoadBalancerStatus, bool]:
        """Return the status of the load balancer and whether it exists."""
        hostname = self._hostname(cluster_name, service)
        instance = self._store.find_by_hostname(hostname)
        if instance is None:
            self._events.emit("balancer.absent", service=service.key, hostname=hostname)
            return LoadBalancerStatus(), False
        return self._status(instance, service), True

    def ensure(
        self,
        cluster_name: str,
        service: ServiceSnapshot,
        nodes: Sequence[NodeAddress],
    ) -> LoadBalancerStatus:
        """Create the load balancer if needed, then bring its configuration up to date."""
        options = resolve_options(service.annotations)
        bindings = _validate_ports(service)
        hostname = self._hostname(cluster_name, service)
        self._events.emit("balancer.ensure", service=service.key, hostname=hostname)

        instance = self._store.find_by_hostname(hostname)
        if instance is None:
            instance = self._create(hostname, options)

        self._apply(instance, service, options, bindings, nodes)
        return self._status(instance, service)

    def update(
        self,
        cluster_name: str,
        service: ServiceSnapshot,
        nodes: Sequence[NodeAddress],
    ) -> None:
        """Re-render and re-deliver the configuration of an existing load balancer."""
        options = resolve_options(service.annotations)
        bindings = _validate_ports(service)
        hostname = self._hostname(cluster_name, service)
        instance = self._store.find_by_hostname(hostname)
        if instance is None:
            raise NotFoundError(f"no load balancer instance named {hostname}")
        self._apply(instance, service, options, bindings, nodes)

    def delete(self, cluster_name: str, service: ServiceSnapshot) -> None:
        """Destroy the load balancer; succeeds if it is already gone."""
        hostname = self._hostname(cluster_name, service)
        instance = self._store.find_by_hostname(hostname)
        if instance is None:
            self._events.emit("balancer.already_deleted", service=service.key, hostname=hostname)
            return
        self._store.destroy(instance.identifier)
        instance.state = InstanceState.DESTROYED
        self._events.emit("balancer.deleted", service=service.key, hostname=hostname)

    @contextmanager
    def _lease(self, instance: BackingInstance) -> Iterator[_Lease]:
        """Destroy ``instance`` on exit unless the lease was committed."""
        lease = _Lease()
        try:
            yield lease
        finally:
            if not lease.committed:
                self._events.emit(
                    "instance.rollback",
                    level=logging.WARNING,
                    hostname=instance.hostname,
                    identifier=instance.identifier,
                )
                try:
                    self._store.destroy(instance.identifier)
                    instance.state = InstanceState.DESTROYED
                except LoadBalancerError as e:
                    self._events.emit(
                        "instance.rollback_failed",
                        level=logging.ERROR,
                        identifier=instance.identifier,
                        error=str(e),
                    )

    def _create(self, hostname: str, options: LoadBalancerOptions) -> BackingInstance:
        tier = capacity_tier(options.connection_limit)
        instance = self._store.create(self._location, tier.package_id, hostname)

        with self._lease(instance) as lease:
            address = instance.primary_address
            with self._shell.wait_until_ready(
                address, password=instance.initial_password
            ) as session:
                prepare_system(session, self._public_key)
            # sshd was restarted with password logins disabled.
            with self._shell.wait_until_ready(address) as session:
                install_load_balancer(session)
            lease.commit()

        instance.initial_password = None
        instance.state = InstanceState.READY
        self._events.emit("balancer.provisioned", hostname=hostname, tier=tier.name)
        return instance

    def _apply(
        self,
        instance: BackingInstance,
        service: ServiceSnapshot,
        options: LoadBalancerOptions,
        bindings: Sequence[PortBinding],
        nodes: Sequence[NodeAddress],
    ) -> None:
        if not instance.interfaces or not instance.addresses:
            raise InconsistentStateError(
                f"cannot update load balancer {self.name(service)}: "
                f"instance {instance.hostname} has no network interfaces"
            )
        addresses = external_addresses(nodes)
        if not addresses:
            self._events.emit(
                "balancer.no_targets", level=logging.WARNING, service=service.key
            )
        tier = capacity_tier(options.connection_limit)
        config_text = render_config(options, tier, bindings, target_endpoints(bindings, addresses))

        with self._shell.open(instance.primary_address) as session:
            apply_configuration(session, config_text)
            reload_load_balancer(session)
        self._events.emit(
            "balancer.configured",
            service=service.key,
            hostname=instance.hostname,
            targets=len(addresses),
        )
