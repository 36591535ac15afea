"""Shared pytest fixtures: an in-memory Docker client and a recording backend."""

import copy

import docker.errors
import pytest

from dockwall.backends import FirewallBackend
from dockwall.policy import Policy


def make_id(prefix: str) -> str:
    """Pad *prefix* to a 64 character Docker id."""
    return prefix + "0" * (64 - len(prefix))


BRIDGE_ID = make_id("b0b0b0b0b0b0")
FRONTEND_ID = make_id("f1f1f1f1f1f1")
BACKEND_ID = make_id("be0be0be0be0")


class FakeObject:
    def __init__(self, attrs):
        self.attrs = copy.deepcopy(attrs)
        self.id = attrs["Id"]


class FakeContainers:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def list(self, all=False, sparse=False, filters=None):
        self.calls.append({"all": all, "sparse": sparse, "filters": filters})
        if self.client.fail_with is not None:
            raise self.client.fail_with
        items = self.client.container_attrs
        if filters and "status" in filters:
            items = [c for c in items if c["State"] in filters["status"]]
        return [FakeObject(c) for c in items]


class FakeNetworks:
    def __init__(self, client):
        self.client = client
        self.inspected = []

    def list(self, greedy=False):
        return [FakeObject(n) for n in self.client.network_attrs]

    def get(self, network_id):
        self.inspected.append(network_id)
        for attrs in self.client.network_attrs:
            if attrs["Id"] == network_id:
                return FakeObject(attrs)
        raise docker.errors.NotFound(f"network {network_id} not found")


class FakeDockerClient:
    def __init__(self):
        self.container_attrs = []
        self.network_attrs = []
        self.event_stream = []
        self.fail_with = None
        self.containers = FakeContainers(self)
        self.networks = FakeNetworks(self)

    def add_network(self, name, net_id, driver="bridge", options=None):
        self.network_attrs.append({
            "Name": name, "Id": net_id, "Driver": driver, "Options": options or {}, "Containers": {},
        })

    def add_container(self, name, cid, networks, state="running", labels=None):
        """*networks* maps network name to the container's IPv4 address on it."""
        settings = {}
        for net_name, address in networks.items():
            net = self.network(net_name)
            settings[net_name] = {
                "NetworkID": net["Id"], "EndpointID": f"ep-{name}-{net_name}", "MacAddress": "",
                "IPAddress": address, "GlobalIPv6Address": "",
            }
            net["Containers"][cid] = {
                "Name": name, "EndpointID": f"ep-{name}-{net_name}", "MacAddress": "",
                "IPv4Address": f"{address}/16", "IPv6Address": "",
            }
        self.container_attrs.append({
            "Id": cid, "Names": [f"/{name}"], "State": state, "Labels": labels or {},
            "NetworkSettings": {"Networks": settings},
        })

    def network(self, name):
        for attrs in self.network_attrs:
            if attrs["Name"] == name:
                return attrs
        raise KeyError(name)

    def events(self, decode=False, filters=None):
        return iter(self.event_stream)


class RecordingBackend(FirewallBackend):
    name = "recording"

    def __init__(self):
        self.applied = []
        self.cleaned = False

    def render(self, rules):
        return "\n".join(repr(r) for r in rules)

    def apply(self, rules, ctx):
        self.applied.append(list(rules))

    def cleanup(self):
        self.cleaned = True


@pytest.fixture
def docker_host():
    """A host with the three default networks, two user networks and four containers."""
    client = FakeDockerClient()
    client.add_network("bridge", BRIDGE_ID, options={"com.docker.network.bridge.name": "docker0"})
    client.add_network("host", make_id("40540540540a"), driver="host")
    client.add_network("none", make_id("00000000000a"), driver="null")
    client.add_network("frontend", FRONTEND_ID)
    client.add_network("backend", BACKEND_ID)
    client.add_container("web", make_id("c0c0c0c0c0c1"), {"frontend": "172.20.0.2", "backend": "172.21.0.2"})
    client.add_container("db", make_id("c0c0c0c0c0c2"), {"backend": "172.21.0.3"})
    client.add_container("proxy", make_id("c0c0c0c0c0c3"), {"frontend": "172.20.0.3"})
    client.add_container("old", make_id("c0c0c0c0c0c4"), {"backend": "172.21.0.9"}, state="exited")
    return client


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def make_policy():
    def _make(data=None):
        data = copy.deepcopy(data or {})
        data.setdefault("defaults", {}).setdefault("external_network_interfaces", ["eth0"])
        return Policy.from_dict(data)
    return _make
