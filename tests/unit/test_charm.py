"""Unit tests for the load balancer controller charm."""

import base64

import pytest
from ops import testing

from charm import LoadBalancerControllerCharm
from lb_cluster import ReconcileSummary

CONFIG = {
    "api-endpoint": "https://api.example.com/v1",
    "api-key": "secret",
    "ssh-private-key": base64.b64encode(b"private").decode(),
    "ssh-public-key": base64.b64encode(b"ssh-ed25519 AAAA").decode(),
}


@pytest.fixture(autouse=True)
def _no_environment(monkeypatch: pytest.MonkeyPatch):
    for name in ("LB_API_ENDPOINT", "LB_API_KEY", "LB_SSH_PRIVATE_KEY", "LB_SSH_PUBLIC_KEY"):
        monkeypatch.delenv(name, raising=False)


def test_non_leader_waits_for_reconcile(monkeypatch: pytest.MonkeyPatch):
    called = {"count": 0}

    def _reconcile(**kwargs):
        called["count"] += 1

    monkeypatch.setattr("charm.lb_cluster.reconcile_load_balancers", _reconcile)

    ctx = testing.Context(LoadBalancerControllerCharm)
    state_in = testing.State(leader=False, config=CONFIG)

    state_out = ctx.run(ctx.on.config_changed(), state_in)

    assert called["count"] == 0
    assert isinstance(state_out.unit_status, testing.WaitingStatus)


def test_leader_reconciles_load_balancers(monkeypatch: pytest.MonkeyPatch):
    captured = {}

    def _reconcile(*, settings, field_manager):
        captured.update({"settings": settings, "field_manager": field_manager})
        return ReconcileSummary(ready=2)

    monkeypatch.setattr("charm.lb_cluster.reconcile_load_balancers", _reconcile)

    ctx = testing.Context(LoadBalancerControllerCharm)
    state_in = testing.State(leader=True, config=dict(CONFIG, **{"cluster-name": "demo"}))

    state_out = ctx.run(ctx.on.update_status(), state_in)

    assert captured["field_manager"] == "cloud-lb-controller"
    assert captured["settings"].cluster_name == "demo"
    assert captured["settings"].ssh_public_key == "ssh-ed25519 AAAA"
    assert state_out.unit_status == testing.ActiveStatus("2 load balancer(s) ready")


def test_missing_credentials_block(monkeypatch: pytest.MonkeyPatch):
    def _reconcile(**kwargs):
        raise AssertionError("reconcile_load_balancers should not be called")

    monkeypatch.setattr("charm.lb_cluster.reconcile_load_balancers", _reconcile)

    ctx = testing.Context(LoadBalancerControllerCharm)
    state_in = testing.State(leader=True, config=dict(CONFIG, **{"api-key": ""}))

    state_out = ctx.run(ctx.on.config_changed(), state_in)

    assert isinstance(state_out.unit_status, testing.BlockedStatus)
    assert "api-key" in state_out.unit_status.message


def test_failed_services_wait_for_next_update(monkeypatch: pytest.MonkeyPatch):
    def _reconcile(**kwargs):
        return ReconcileSummary(ready=1, failed={"default/web": "reload failed"})

    monkeypatch.setattr("charm.lb_cluster.reconcile_load_balancers", _reconcile)

    ctx = testing.Context(LoadBalancerControllerCharm)
    state_out = ctx.run(ctx.on.config_changed(), testing.State(leader=True, config=CONFIG))

    assert isinstance(state_out.unit_status, testing.WaitingStatus)
    assert "1 load balancer(s) failed" in state_out.unit_status.message


def test_remove_deletes_load_balancers(monkeypatch: pytest.MonkeyPatch):
    called = {"count": 0}

    def _delete(*, settings, field_manager):
        called["count"] += 1
        return ReconcileSummary(deleted=1)

    monkeypatch.setattr("charm.lb_cluster.delete_load_balancers", _delete)

    ctx = testing.Context(LoadBalancerControllerCharm)
    ctx.run(ctx.on.remove(), testing.State(leader=True, config=CONFIG))

    assert called["count"] == 1
