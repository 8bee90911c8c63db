"""Unit tests for the Kubernetes side of reconciliation."""

import datetime

import pytest
from lightkube.models.core_v1 import (
    LoadBalancerIngress,
    LoadBalancerStatus as K8sLoadBalancerStatus,
    NodeAddress as K8sNodeAddress,
    NodeStatus,
    ServicePort,
    ServiceSpec,
    ServiceStatus,
)
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.core_v1 import Node, Service
from lightkube.types import PatchType

import lb_cluster
from lb_errors import ConfigError, ReloadError
from lb_models import LoadBalancerStatus, NodeAddress, PortBinding
from lb_settings import CloudSettings

SETTINGS = CloudSettings(
    api_endpoint="https://api.test/v1",
    api_key="secret",
    ssh_private_key="unused",
    ssh_public_key="ssh-ed25519 AAAA",
    cluster_name="demo",
)


def _service(
    name="web",
    *,
    type_="LoadBalancer",
    finalizers=None,
    ingress=None,
    deleting=False,
    node_port=30080,
    annotations=None,
):
    status = None
    if ingress is not None:
        status = ServiceStatus(
            loadBalancer=K8sLoadBalancerStatus(ingress=[LoadBalancerIngress(ip=ip) for ip in ingress])
        )
    return Service(
        metadata=ObjectMeta(
            name=name,
            namespace="default",
            uid=f"uid-{name}",
            finalizers=finalizers,
            annotations=annotations,
            deletionTimestamp=(
                datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc) if deleting else None
            ),
        ),
        spec=ServiceSpec(
            type=type_,
            ports=[ServicePort(port=80, nodePort=node_port, protocol="TCP")],
        ),
        status=status,
    )


def _node(*addresses):
    return Node(
        metadata=ObjectMeta(name="node"),
        status=NodeStatus(addresses=[K8sNodeAddress(type=t, address=a) for t, a in addresses]),
    )


class FakeClient:
    def __init__(self, services, nodes=()):
        self.services = list(services)
        self.nodes = list(nodes)
        self.patches = []

    def list(self, res, namespace=None):
        if res is Node:
            return iter(self.nodes)
        assert namespace == "*"
        return iter(self.services)

    def patch(self, res, name, obj, *, namespace=None, patch_type=None):
        self.patches.append((res, name, obj, namespace, patch_type))


class FakeController:
    def __init__(self, ingress=("203.0.113.10",), failures=None):
        self.ingress = tuple(ingress)
        self.failures = failures or {}
        self.ensured = []
        self.deleted = []
        self.closed = False

    def ensure(self, cluster_name, service, nodes):
        self.ensured.append((cluster_name, service, list(nodes)))
        if service.name in self.failures:
            raise self.failures[service.name]
        return LoadBalancerStatus(ingress=self.ingress)

    def delete(self, cluster_name, service):
        self.deleted.append((cluster_name, service.name))

    def close(self):
        self.closed = True


def _reconcile(client, controller):
    return lb_cluster.reconcile_load_balancers(
        settings=SETTINGS, field_manager="cloud-lb-controller", client=client, controller=controller
    )


def test_new_service_gets_finalizer_and_ingress():
    client = FakeClient(
        [_service(annotations={"loadbalancer.cloud/algorithm": "source"})],
        [_node(("InternalIP", "192.168.0.4"), ("ExternalIP", "10.0.0.5"))],
    )
    controller = FakeController()

    summary = _reconcile(client, controller)

    assert summary.ready == 1
    assert summary.failed == {}
    cluster_name, snapshot, nodes = controller.ensured[0]
    assert cluster_name == "demo"
    assert snapshot.uid == "uid-web"
    assert snapshot.ports == (PortBinding(80, 30080, "TCP"),)
    assert snapshot.annotations == {"loadbalancer.cloud/algorithm": "source"}
    assert NodeAddress("ExternalIP", "10.0.0.5") in nodes
    assert client.patches == [
        (
            Service,
            "web",
            {"metadata": {"finalizers": [lb_cluster.FINALIZER]}},
            "default",
            PatchType.MERGE,
        ),
        (
            Service.Status,
            "web",
            {"status": {"loadBalancer": {"ingress": [{"ip": "203.0.113.10"}]}}},
            "default",
            PatchType.MERGE,
        ),
    ]
    assert not controller.closed


def test_unchanged_service_is_not_patched():
    client = FakeClient(
        [_service(finalizers=[lb_cluster.FINALIZER], ingress=["203.0.113.10"])]
    )

    summary = _reconcile(client, FakeController())

    assert summary.ready == 1
    assert client.patches == []


def test_services_of_other_types_are_ignored():
    client = FakeClient([_service(type_="ClusterIP")])
    controller = FakeController()

    summary = _reconcile(client, controller)

    assert summary.ready == 0
    assert controller.ensured == []
    assert client.patches == []


@pytest.mark.parametrize(
    "service",
    [
        _service(type_="ClusterIP", finalizers=["other/finalizer", lb_cluster.FINALIZER]),
        _service(deleting=True, finalizers=["other/finalizer", lb_cluster.FINALIZER]),
    ],
)
def test_cleanup_deletes_instance_and_releases_finalizer(service):
    client = FakeClient([service])
    controller = FakeController()

    summary = _reconcile(client, controller)

    assert summary.deleted == 1
    assert controller.deleted == [("demo", "web")]
    assert controller.ensured == []
    assert client.patches == [
        (Service, "web", {"metadata": {"finalizers": ["other/finalizer"]}}, "default", PatchType.MERGE)
    ]


def test_one_failure_does_not_stop_other_services():
    client = FakeClient([_service("broken"), _service("web")])
    controller = FakeController(failures={"broken": ReloadError("203.0.113.10", "parse error")})

    summary = _reconcile(client, controller)

    assert summary.ready == 1
    assert list(summary.failed) == ["default/broken"]
    assert "parse error" in summary.failed["default/broken"]


def test_service_without_node_port_is_reported():
    client = FakeClient([_service(node_port=None)])
    controller = FakeController()

    summary = _reconcile(client, controller)

    assert "default/web" in summary.failed
    assert controller.ensured == []


def test_service_snapshot_requires_node_port():
    with pytest.raises(ConfigError):
        lb_cluster.service_snapshot(_service(node_port=None))


def test_delete_load_balancers_only_touches_owned_services():
    client = FakeClient(
        [_service("owned", finalizers=[lb_cluster.FINALIZER]), _service("foreign")]
    )
    controller = FakeController()

    summary = lb_cluster.delete_load_balancers(
        settings=SETTINGS, field_manager="cloud-lb-controller", client=client, controller=controller
    )

    assert summary.deleted == 1
    assert controller.deleted == [("demo", "owned")]
    assert len(client.patches) == 1
