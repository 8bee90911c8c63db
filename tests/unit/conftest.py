"""Shared fakes for the unit tests."""

import itertools
import json
import logging

import httpx
import pytest

from lb_errors import ProvisioningTimeout, RemoteCommandError
from lb_remote import CommandResult
from lb_store import CloudServerStore


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event, *, level=logging.INFO, **fields):
        self.events.append((event, level, fields))

    def names(self):
        return [event for event, _, _ in self.events]


class FakeComputeApi:
    """In-memory stand-in for the compute API's cloudservers collection."""

    def __init__(self):
        self.servers = {}
        self.requests = []
        self.with_interfaces = True
        self._ids = itertools.count(1)
        self._ips = itertools.count(10)

    def add(self, hostname, addresses=("203.0.113.10",)):
        identifier = f"srv{next(self._ids)}"
        self.servers[identifier] = {
            "identifier": identifier,
            "hostname": hostname,
            "network_interfaces": [
                {"ip_addresses": [{"address": a} for a in addresses]}
            ] if addresses else [],
        }
        return identifier

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path, request.url.params))
        parts = request.url.path.rstrip("/").split("/")
        if parts[-1] == "cloudservers":
            if request.method == "GET":
                hostname = request.url.params.get("hostname", "")
                return httpx.Response(
                    200, json=[s for s in self.servers.values() if hostname in s["hostname"]]
                )
            if request.method == "POST":
                body = json.loads(request.content)
                addresses = (f"203.0.113.{next(self._ips)}",) if self.with_interfaces else ()
                identifier = self.add(body["hostname"], addresses)
                self.servers[identifier]["package"] = {"identifier": body["package"]}
                return httpx.Response(200, json=self.servers[identifier])
        identifier = parts[-1]
        if request.method == "GET":
            if identifier not in self.servers:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json=self.servers[identifier])
        if request.method == "DELETE":
            if self.servers.pop(identifier, None) is None:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json={})
        return httpx.Response(405)

    def creates(self):
        return [r for r in self.requests if r[0] == "POST"]


class FakeSession:
    def __init__(self, shell, address, password):
        self.shell = shell
        self.address = address
        self.password = password
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def run(self, command, *, check=True, timeout=None):
        self.shell.commands.append((self.address, command))
        for fragment, output in self.shell.failing.items():
            if fragment in command:
                if check:
                    raise RemoteCommandError(command, 1, output)
                return CommandResult(command, 1, output)
        return CommandResult(command, 0, "")

    def upload(self, path, contents, *, mode=None):
        self.shell.uploads.append((self.address, path, contents))
        self.shell.files[(self.address, path)] = contents

    def close(self):
        self.closed = True


class FakeShell:
    def __init__(self):
        self.commands = []
        self.uploads = []
        self.files = {}
        self.failing = {}
        self.sessions = []
        self.unreachable = False

    def _session(self, address, password=None):
        session = FakeSession(self, address, password)
        self.sessions.append(session)
        return session

    def wait_until_ready(self, address, *, password=None, max_wait=None):
        if self.unreachable:
            raise ProvisioningTimeout(f"{address} did not accept ssh sessions")
        return self._session(address, password)

    def open(self, address):
        return self._session(address)

    def config_for(self, address):
        return self.files.get((address, "/etc/haproxy/haproxy.cfg"))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def api():
    return FakeComputeApi()


@pytest.fixture
def store(api, sink):
    http = httpx.Client(
        transport=httpx.MockTransport(api.handler), base_url="https://api.test/v1/"
    )
    store = CloudServerStore(
        http, events=sink, sleep=lambda seconds: None, interface_attempts=2
    )
    yield store
    store.close()


@pytest.fixture
def shell():
    return FakeShell()
