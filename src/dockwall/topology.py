"""Per-cycle snapshot of the Docker host: which containers exist, which
networks they sit on, and which host interface backs each network.

Everything here is read-only against Docker. Objects returned by the SDK are
normalized into frozen dataclasses right away so that nothing downstream
depends on the shape of the Engine API responses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from docker.errors import DockerException
from requests.exceptions import RequestException

from .errors import InvalidIdentifier, TopologyError

MIN_ID_LENGTH = 12
BRIDGE_PREFIX = "br-"
BRIDGE_NAME_OPTION = "com.docker.network.bridge.name"


def bridge_name(network_id: str) -> str:
    """Derive the host bridge interface Docker creates for a network."""
    if len(network_id) < MIN_ID_LENGTH:
        raise InvalidIdentifier(
            f"network id {network_id!r} has to be at least {MIN_ID_LENGTH} characters long")
    return f"{BRIDGE_PREFIX}{network_id[:MIN_ID_LENGTH]}"


def _strip_prefix_len(address: Optional[str]) -> str:
    # Network inspect reports "172.18.0.2/16", container listing reports "172.18.0.2".
    if not address:
        return ""
    return address.split("/", 1)[0]


@dataclass(frozen=True)
class NetworkAttachment:
    network_id: str = ""
    ipv4_address: str = ""
    ipv6_address: str = ""
    mac_address: str = ""
    endpoint_id: str = ""
    # False on internal networks, which have no route off the host.
    external_connectivity: bool = True

    @property
    def addresses(self) -> List[str]:
        return [a for a in (self.ipv4_address, self.ipv6_address) if a]

    @classmethod
    def from_container_listing(cls, data: dict) -> "NetworkAttachment":
        return cls(
            network_id=data.get("NetworkID") or "",
            ipv4_address=_strip_prefix_len(data.get("IPAddress")),
            ipv6_address=_strip_prefix_len(data.get("GlobalIPv6Address")),
            mac_address=data.get("MacAddress") or "",
            endpoint_id=data.get("EndpointID") or "",
        )

    @classmethod
    def from_network_inspect(cls, network_id: str, data: dict, internal: bool = False) -> "NetworkAttachment":
        return cls(
            network_id=network_id,
            ipv4_address=_strip_prefix_len(data.get("IPv4Address")),
            ipv6_address=_strip_prefix_len(data.get("IPv6Address")),
            mac_address=data.get("MacAddress") or "",
            endpoint_id=data.get("EndpointID") or "",
            external_connectivity=not internal,
        )


@dataclass(frozen=True)
class Container:
    id: str
    names: Tuple[str, ...]
    state: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    networks: Dict[str, NetworkAttachment] = field(default_factory=dict)

    @classmethod
    def from_docker(cls, container) -> "Container":
        attrs = container.attrs
        networks = attrs.get("NetworkSettings", {}).get("Networks", {}) or {}
        return cls(
            id=attrs.get("Id") or container.id,
            names=tuple(name.lstrip("/") for name in attrs.get("Names") or []),
            state=attrs.get("State") or "",
            labels=dict(attrs.get("Labels") or {}),
            networks={name: NetworkAttachment.from_container_listing(net)
                      for name, net in networks.items()},
        )

    def attachment(self, network: "Network") -> Optional[NetworkAttachment]:
        """Return the attachment to *network*, matched by name or by id."""
        att = self.networks.get(network.name)
        if att is not None:
            return att
        for att in self.networks.values():
            if att.network_id == network.id:
                return att
        return None


@dataclass(frozen=True)
class Network:
    id: str
    name: str
    driver: str = ""
    options: Dict[str, str] = field(default_factory=dict)
    internal: bool = False
    containers: Dict[str, NetworkAttachment] = field(default_factory=dict)

    @classmethod
    def from_docker(cls, network) -> "Network":
        attrs = network.attrs
        net_id = attrs.get("Id") or network.id
        internal = bool(attrs.get("Internal"))
        return cls(
            id=net_id,
            name=attrs.get("Name") or "",
            driver=attrs.get("Driver") or "",
            options=dict(attrs.get("Options") or {}),
            internal=internal,
            containers={cid: NetworkAttachment.from_network_inspect(net_id, data, internal)
                        for cid, data in (attrs.get("Containers") or {}).items()},
        )

    @property
    def is_bridge(self) -> bool:
        return self.driver == "bridge"

    @property
    def bridge_interface(self) -> str:
        # The default "bridge" network is backed by docker0, not br-<id>.
        custom = self.options.get(BRIDGE_NAME_OPTION)
        if custom:
            return custom
        return bridge_name(self.id)


def get_container_map(containers: List[Container]) -> Dict[str, Container]:
    container_map: Dict[str, Container] = {}
    for container in containers:
        for name in container.names:
            container_map[name] = container
    return container_map


def get_network_map(networks: List[Network]) -> Dict[str, Network]:
    network_map = {network.name: network for network in networks}
    if not network_map:
        raise TopologyError("no networks found, this does not look like a Docker host")
    return network_map


@dataclass
class Snapshot:
    containers: Dict[str, Container]
    networks: Dict[str, Network]

    @classmethod
    def build(cls, docker_client, options) -> "Snapshot":
        """Query Docker for containers and networks and index them by name."""
        try:
            listed = docker_client.containers.list(
                all=True, sparse=True, filters=options.docker_filters())
            logging.debug(f"Got list of containers: {[c.attrs for c in listed]}")
            containers = [Container.from_docker(c) for c in listed]

            listed = docker_client.networks.list(greedy=False)
            logging.debug(f"Got list of networks: {[n.attrs for n in listed]}")
            networks = [Network.from_docker(n) for n in listed]
        except (DockerException, RequestException) as e:
            raise TopologyError(f"querying Docker failed: {e}") from e

        snapshot = cls(containers=get_container_map(containers), networks=get_network_map(networks))
        logging.debug(f"Snapshot: containers={sorted(snapshot.containers)} networks={sorted(snapshot.networks)}")
        return snapshot

    def bridge_networks(self) -> List[Network]:
        return [self.networks[name] for name in sorted(self.networks) if self.networks[name].is_bridge]


def network_for_container(docker_client, snapshot: Snapshot, container_name: str,
                          network_id: str) -> Optional[NetworkAttachment]:
    """Look up a container's live attachment on a network.

    Unlike the snapshot this asks Docker directly, so the returned address is
    current even if the container was reconnected since the snapshot was
    taken. Returns None if the container is unknown or not on the network.
    """
    container = snapshot.containers.get(container_name)
    if container is None:
        return None
    try:
        attrs = docker_client.networks.get(network_id).attrs
    except (DockerException, RequestException) as e:
        raise TopologyError(f"inspecting network {network_id[:12]} failed: {e}") from e
    data = (attrs.get("Containers") or {}).get(container.id)
    if data is None:
        return None
    return NetworkAttachment.from_network_inspect(network_id, data, bool(attrs.get("Internal")))
