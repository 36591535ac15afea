"""Rule processing: the ``Process`` contract and the per-cycle context."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import InvalidIdentifier, RuleDerivationError
from .topology import Network, NetworkAttachment, Snapshot, network_for_container


class Process:
    """Implemented by every policy node that can contribute rules."""

    def process(self, ctx: "ProcessContext") -> list:
        raise NotImplementedError


def process_node(node, ctx: "ProcessContext") -> list:
    """Process a policy node, an optional node (None) or a list of nodes."""
    if node is None:
        return []
    if isinstance(node, (list, tuple)):
        rules = []
        for child in node:
            rules.extend(process_node(child, ctx))
        return rules
    return node.process(ctx)


class ContainerFilter(enum.Enum):
    ALL = "all"
    RUNNING = "running"


@dataclass
class ProcessingOptions:
    container_filter: ContainerFilter = ContainerFilter.ALL

    def docker_filters(self) -> Dict[str, List[str]]:
        if self.container_filter is ContainerFilter.RUNNING:
            return {"status": ["running"]}
        return {}


class ProcessContext:
    """Holds everything one reconciliation cycle needs.

    Construction takes the topology snapshot, so a context must not be reused
    across cycles; build a new one for every reconciliation.
    """

    def __init__(self, docker_client, policy, options: Optional[ProcessingOptions] = None,
                 backend=None, dry_run: bool = False, logger: Optional[logging.Logger] = None):
        if backend is None and not dry_run:
            raise ValueError("a firewall backend is required unless dry_run is set")
        self.docker = docker_client
        self.policy = policy
        self.options = options or ProcessingOptions()
        self.backend = backend
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger("dockwall")

        self.snapshot = Snapshot.build(docker_client, self.options)
        self.defaults = policy.defaults
        self.external_network_interfaces = list(policy.defaults.external_network_interfaces or [])

    @property
    def container_map(self):
        return self.snapshot.containers

    @property
    def network_map(self):
        return self.snapshot.networks

    def process(self) -> list:
        """Derive all rules and hand them to the backend."""
        rules = process_node(self.policy, self)
        self.logger.info(f"Derived {len(rules)} rules")
        if not rules:
            return rules

        if self.dry_run:
            rendered = self.backend.render(rules) if self.backend else "\n".join(map(repr, rules))
            self.logger.info(f"[DRY-RUN] not applying rules:\n{rendered}")
        else:
            self.backend.apply(rules, self)
        return rules

    # ---------------- Resolution helpers -----------------
    def resolve_network(self, name: str) -> Network:
        network = self.network_map.get(name)
        if network is None:
            raise RuleDerivationError(f"network {name!r} does not exist")
        return network

    def bridge_for(self, network: Network) -> str:
        try:
            return network.bridge_interface
        except InvalidIdentifier as e:
            raise RuleDerivationError(f"cannot derive interface for network {network.name!r}: {e}") from e

    def default_bridges(self) -> List[str]:
        """Interfaces of every bridge network, for category default policies.

        No policy entry names these networks, so one with an unusable id is
        skipped instead of failing the cycle.
        """
        bridges = []
        for network in self.snapshot.bridge_networks():
            try:
                bridges.append(network.bridge_interface)
            except InvalidIdentifier as e:
                self.logger.warning(f"Skipping network {network.name!r} in default policies: {e}")
        return bridges

    def container_addresses(self, container_name: str, network: Network) -> Optional[List[str]]:
        """Addresses a container holds on *network*, or None if it should be skipped."""
        container = self.container_map.get(container_name)
        if container is None:
            self.logger.debug(f"Container {container_name!r} not found, skipping")
            return None
        att = container.attachment(network)
        if att is None or not att.addresses:
            self.logger.debug(f"Container {container_name!r} not attached to {network.name!r}, skipping")
            return None
        return att.addresses

    def live_attachment(self, container_name: str, network: Network) -> Optional[NetworkAttachment]:
        return network_for_container(self.docker, self.snapshot, container_name, network.id)

    def external_interfaces(self, override: Optional[str] = None) -> List[str]:
        if override:
            return [override]
        if not self.external_network_interfaces:
            raise RuleDerivationError(
                "no external network interface given and defaults.external_network_interfaces is not set")
        return self.external_network_interfaces
