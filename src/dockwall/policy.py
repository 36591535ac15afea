"""Policy tree and rule derivation.

The policy document has six categories, processed in this order::

    defaults                    chain setup and default policies
    container_to_container      traffic between containers (FORWARD, bridge -> bridge)
    container_to_wider_world    container egress (FORWARD, bridge -> external iface)
    container_to_host           containers reaching host services (INPUT)
    wider_world_to_container    published ports (DNAT + FORWARD, external iface -> bridge)
    container_dnat              DNAT between containers, resolved against live attachments

Every node implements ``process(ctx)`` and returns an ordered list of
``ChainSetup``/``Rule`` records. Lists of entries are processed through
``process_node`` so declaration order is kept. The default policies of all
categories follow every explicit rule, so a ``drop`` default never hides a
published port or a container DNAT.

Example (YAML)::

    defaults:
      external_network_interfaces: [eth0]
    container_to_wider_world:
      default_policy: accept
    wider_world_to_container:
      rules:
        - network: frontend
          dst_container: traefik
          expose_port: ["80", "443"]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigurationError
from .process import Process, ProcessContext, process_node
from .rules import (
    ACCEPT, DNAT, DROP, FILTER, FILTER_VERDICTS, FORWARD, INPUT, MASQUERADE, NAT, POSTROUTING, PREROUTING,
    ChainSetup, Rule, address_family, generate_marker, join_host_port,
)

PROTOCOLS = ("tcp", "udp")
CHAIN_POLICIES = (ACCEPT, DROP)
_PORT_RE = re.compile(r"^\d{1,5}(-\d{1,5})?$")
_EXPOSE_RE = re.compile(r"^(?P<host>\d{1,5})(:(?P<container>\d{1,5}))?(/(?P<proto>[a-z]+))?$")


# ---------------- Parsing helpers -----------------
def _from_mapping(cls, data: Any, where: str, **converters: Callable[[Any, str], Any]):
    if not isinstance(data, dict):
        raise ConfigurationError(f"{where}: expected a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"{where}: unknown keys {unknown}")
    kwargs = {}
    for key, value in data.items():
        conv = converters.get(key)
        kwargs[key] = conv(value, f"{where}.{key}") if conv else value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigurationError(f"{where}: {e}") from e


def _choice(choices):
    def conv(value, where):
        value = str(value).strip().lower()
        if value not in choices:
            raise ConfigurationError(f"{where}: {value!r} is not one of {list(choices)}")
        return value
    return conv


_verdict = _choice(FILTER_VERDICTS)
_chain_policy = _choice(CHAIN_POLICIES)
_protocol = _choice(PROTOCOLS)


def _port(value, where):
    value = str(value).strip()
    if not _PORT_RE.match(value):
        raise ConfigurationError(f"{where}: {value!r} is not a port or port range")
    for part in value.split("-"):
        if not 0 < int(part) < 65536:
            raise ConfigurationError(f"{where}: port {part} out of range")
    return value


def _string(value, where):
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{where}: expected a non-empty string")
    return value


def _string_list(value, where):
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ConfigurationError(f"{where}: expected a list of strings")
    return [_string(v, f"{where}[{i}]") for i, v in enumerate(value)]


def _list_of(cls):
    def conv(value, where):
        if not isinstance(value, list):
            raise ConfigurationError(f"{where}: expected a list")
        return [cls.from_dict(item, f"{where}[{i}]") for i, item in enumerate(value)]
    return conv


def _category(cls, data, where):
    if data is None:
        return None
    # A bare list is shorthand for {"rules": [...]}.
    if isinstance(data, list):
        data = {"rules": data}
    return cls.from_dict(data, where)


def _default_protocol(entry):
    if entry.port is not None and entry.protocol is None:
        entry.protocol = "tcp"


def _same_family(*addresses: Optional[str]) -> bool:
    try:
        address_family(*addresses)
    except ValueError:
        return False
    return True


def _addresses_or_any(ctx: ProcessContext, container_name: Optional[str], network) -> Optional[List[Optional[str]]]:
    """[None] matches the whole network; None means the entry contributes nothing."""
    if container_name is None:
        return [None]
    return ctx.container_addresses(container_name, network)


def _dedupe(rules: list) -> list:
    seen = set()
    out = []
    for rule in rules:
        if rule not in seen:
            seen.add(rule)
            out.append(rule)
    return out


class Category(Process):
    """A policy category: explicit entries plus an optional default policy.

    ``process`` yields the explicit rules. ``process_defaults`` yields the
    catch-all rules, which ``Policy.process`` places after the explicit rules
    of every category.
    """

    def process_defaults(self, ctx: ProcessContext) -> list:
        return []


# ---------------- Ports -----------------
@dataclass
class ExposePort:
    host_port: int
    container_port: Optional[int] = None
    protocol: str = "tcp"

    @property
    def target_port(self) -> int:
        return self.container_port if self.container_port is not None else self.host_port

    @classmethod
    def from_dict(cls, data: Any, where: str = "expose_port") -> "ExposePort":
        if isinstance(data, int) and not isinstance(data, bool):
            data = str(data)
        if isinstance(data, str):
            m = _EXPOSE_RE.match(data.strip().lower())
            if not m:
                raise ConfigurationError(f"{where}: cannot parse {data!r}, expected HOST[:CONTAINER][/PROTO]")
            data = {k: v for k, v in (("host_port", m["host"]), ("container_port", m["container"]),
                                      ("protocol", m["proto"])) if v is not None}
        port = _from_mapping(cls, data, where, protocol=_protocol)
        for name in ("host_port", "container_port"):
            value = getattr(port, name)
            if value is None:
                continue
            try:
                value = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{where}.{name}: {value!r} is not a port") from e
            if not 0 < value < 65536:
                raise ConfigurationError(f"{where}.{name}: port {value} out of range")
            setattr(port, name, value)
        return port


# ---------------- defaults -----------------
@dataclass
class Defaults(Process):
    external_network_interfaces: Optional[List[str]] = None
    input_policy: str = ACCEPT
    forward_policy: str = ACCEPT
    table: str = "dockwall"
    input_chain: str = "DOCKWALL-INPUT"
    forward_chain: str = "DOCKWALL-FORWARD"
    dnat_chain: str = "DOCKWALL-PREROUTING"
    snat_chain: str = "DOCKWALL-POSTROUTING"

    @classmethod
    def from_dict(cls, data: Any, where: str = "defaults") -> "Defaults":
        if data is None:
            return cls()
        return _from_mapping(
            cls, data, where,
            external_network_interfaces=_string_list,
            input_policy=_chain_policy, forward_policy=_chain_policy,
            table=_string, input_chain=_string, forward_chain=_string, dnat_chain=_string, snat_chain=_string,
        )

    def process(self, ctx: ProcessContext) -> list:
        marker = generate_marker(["defaults"])
        rules: list = [
            ChainSetup(FILTER, self.input_chain, INPUT, self.input_policy, marker),
            ChainSetup(FILTER, self.forward_chain, FORWARD, self.forward_policy, marker),
            ChainSetup(NAT, self.dnat_chain, PREROUTING, ACCEPT, marker),
            ChainSetup(NAT, self.snat_chain, POSTROUTING, ACCEPT, marker),
        ]
        for chain in (self.input_chain, self.forward_chain):
            rules.append(Rule.build(FILTER, chain, DROP, marker, ct_states=("invalid",)))
            rules.append(Rule.build(FILTER, chain, ACCEPT, marker, ct_states=("established", "related")))
        return rules


# ---------------- container_to_container -----------------
@dataclass
class ContainerToContainerRule(Process):
    network: str
    verdict: str
    src_container: Optional[str] = None
    dst_container: Optional[str] = None
    dst_network: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[str] = None

    def __post_init__(self):
        _default_protocol(self)

    @classmethod
    def from_dict(cls, data, where="container_to_container.rules"):
        return _from_mapping(cls, data, where, network=_string, verdict=_verdict, src_container=_string,
                             dst_container=_string, dst_network=_string, protocol=_protocol, port=_port)

    def process(self, ctx: ProcessContext) -> list:
        network = ctx.resolve_network(self.network)
        bridge = ctx.bridge_for(network)
        dst_network = ctx.resolve_network(self.dst_network) if self.dst_network else network
        dst_bridge = ctx.bridge_for(dst_network)

        sources = _addresses_or_any(ctx, self.src_container, network)
        destinations = _addresses_or_any(ctx, self.dst_container, dst_network)
        if sources is None or destinations is None:
            return []

        marker = generate_marker(["container_to_container", network.name, self.src_container or "*",
                                  dst_network.name, self.dst_container or "*"])
        rules = []
        for src in sources:
            for dst in destinations:
                if not _same_family(src, dst):
                    continue
                rules.append(Rule.build(
                    FILTER, ctx.defaults.forward_chain, self.verdict, marker,
                    in_interface=bridge, out_interface=dst_bridge, source=src, destination=dst,
                    protocol=self.protocol, destination_port=self.port,
                ))
        return rules


@dataclass
class ContainerToContainer(Category):
    default_policy: str = ACCEPT
    rules: List[ContainerToContainerRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data, where="container_to_container"):
        return _from_mapping(cls, data, where, default_policy=_verdict,
                             rules=_list_of(ContainerToContainerRule))

    def process(self, ctx: ProcessContext) -> list:
        return process_node(self.rules, ctx)

    def process_defaults(self, ctx: ProcessContext) -> list:
        rules = []
        marker = generate_marker(["container_to_container", "default"])
        bridges = ctx.default_bridges()
        for src in bridges:
            for dst in bridges:
                rules.append(Rule.build(FILTER, ctx.defaults.forward_chain, self.default_policy, marker,
                                        in_interface=src, out_interface=dst))
        return rules


# ---------------- container_to_wider_world -----------------
@dataclass
class ContainerToWiderWorldRule(Process):
    network: str
    verdict: str
    src_container: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[str] = None
    external_network_interface: Optional[str] = None

    def __post_init__(self):
        _default_protocol(self)

    @classmethod
    def from_dict(cls, data, where="container_to_wider_world.rules"):
        return _from_mapping(cls, data, where, network=_string, verdict=_verdict, src_container=_string,
                             protocol=_protocol, port=_port, external_network_interface=_string)

    def process(self, ctx: ProcessContext) -> list:
        network = ctx.resolve_network(self.network)
        bridge = ctx.bridge_for(network)
        interfaces = ctx.external_interfaces(self.external_network_interface)
        sources = _addresses_or_any(ctx, self.src_container, network)
        if sources is None:
            return []

        marker = generate_marker(["container_to_wider_world", network.name, self.src_container or "*"])
        return [
            Rule.build(FILTER, ctx.defaults.forward_chain, self.verdict, marker,
                       in_interface=bridge, out_interface=iface, source=src,
                       protocol=self.protocol, destination_port=self.port)
            for iface in interfaces
            for src in sources
        ]


@dataclass
class ContainerToWiderWorld(Category):
    default_policy: str = ACCEPT
    masquerade: bool = True
    rules: List[ContainerToWiderWorldRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data, where="container_to_wider_world"):
        def _bool(value, where):
            if not isinstance(value, bool):
                raise ConfigurationError(f"{where}: expected true or false")
            return value
        return _from_mapping(cls, data, where, default_policy=_verdict, masquerade=_bool,
                             rules=_list_of(ContainerToWiderWorldRule))

    def _with_masquerade(self, ctx: ProcessContext, rules: list) -> list:
        if self.masquerade:
            rules = rules + _dedupe([
                Rule.build(NAT, ctx.defaults.snat_chain, MASQUERADE, rule.marker,
                           in_interface=rule.in_interface, out_interface=rule.out_interface, source=rule.source)
                for rule in rules if rule.verdict == ACCEPT
            ])
        return rules

    def process(self, ctx: ProcessContext) -> list:
        return self._with_masquerade(ctx, process_node(self.rules, ctx))

    def process_defaults(self, ctx: ProcessContext) -> list:
        marker = generate_marker(["container_to_wider_world", "default"])
        interfaces = ctx.external_interfaces()
        rules = [
            Rule.build(FILTER, ctx.defaults.forward_chain, self.default_policy, marker,
                       in_interface=bridge, out_interface=iface)
            for bridge in ctx.default_bridges()
            for iface in interfaces
        ]
        return self._with_masquerade(ctx, rules)


# ---------------- container_to_host -----------------
@dataclass
class ContainerToHostRule(Process):
    network: str
    verdict: str
    src_container: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[str] = None

    def __post_init__(self):
        _default_protocol(self)

    @classmethod
    def from_dict(cls, data, where="container_to_host.rules"):
        return _from_mapping(cls, data, where, network=_string, verdict=_verdict, src_container=_string,
                             protocol=_protocol, port=_port)

    def process(self, ctx: ProcessContext) -> list:
        network = ctx.resolve_network(self.network)
        bridge = ctx.bridge_for(network)
        sources = _addresses_or_any(ctx, self.src_container, network)
        if sources is None:
            return []

        marker = generate_marker(["container_to_host", network.name, self.src_container or "*"])
        return [
            Rule.build(FILTER, ctx.defaults.input_chain, self.verdict, marker,
                       in_interface=bridge, source=src, protocol=self.protocol, destination_port=self.port)
            for src in sources
        ]


@dataclass
class ContainerToHost(Category):
    default_policy: str = ACCEPT
    rules: List[ContainerToHostRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data, where="container_to_host"):
        return _from_mapping(cls, data, where, default_policy=_verdict, rules=_list_of(ContainerToHostRule))

    def process(self, ctx: ProcessContext) -> list:
        return process_node(self.rules, ctx)

    def process_defaults(self, ctx: ProcessContext) -> list:
        marker = generate_marker(["container_to_host", "default"])
        return [
            Rule.build(FILTER, ctx.defaults.input_chain, self.default_policy, marker, in_interface=bridge)
            for bridge in ctx.default_bridges()
        ]


# ---------------- wider_world_to_container -----------------
@dataclass
class WiderWorldToContainerRule(Process):
    network: str
    expose_port: List[ExposePort]
    dst_container: Optional[str] = None
    external_network_interface: Optional[str] = None
    source_cidr: Optional[str] = None

    @classmethod
    def from_dict(cls, data, where="wider_world_to_container.rules"):
        def _cidr(value, where):
            value = _string(value, where)
            try:
                address_family(value)
            except ValueError as e:
                raise ConfigurationError(f"{where}: {e}") from e
            return value
        return _from_mapping(cls, data, where, network=_string, expose_port=_list_of(ExposePort),
                             dst_container=_string, external_network_interface=_string, source_cidr=_cidr)

    def process(self, ctx: ProcessContext) -> list:
        network = ctx.resolve_network(self.network)
        bridge = ctx.bridge_for(network)
        interfaces = ctx.external_interfaces(self.external_network_interface)
        marker = generate_marker(["wider_world_to_container", network.name, self.dst_container or "*"])
        forward_chain = ctx.defaults.forward_chain

        if self.dst_container is None:
            return [
                Rule.build(FILTER, forward_chain, ACCEPT, marker, in_interface=iface, out_interface=bridge,
                           source=self.source_cidr, protocol=port.protocol, destination_port=port.target_port)
                for iface in interfaces
                for port in self.expose_port
            ]

        addresses = ctx.container_addresses(self.dst_container, network)
        if addresses is None:
            return []

        rules = []
        for iface in interfaces:
            for port in self.expose_port:
                for address in addresses:
                    if not _same_family(self.source_cidr, address):
                        continue
                    rules.append(Rule.build(
                        NAT, ctx.defaults.dnat_chain, DNAT, marker,
                        in_interface=iface, source=self.source_cidr, protocol=port.protocol,
                        destination_port=port.host_port, destination_local=True,
                        dnat_to=join_host_port(address, port.target_port),
                    ))
                    rules.append(Rule.build(
                        FILTER, forward_chain, ACCEPT, marker,
                        in_interface=iface, out_interface=bridge, source=self.source_cidr,
                        destination=address, protocol=port.protocol, destination_port=port.target_port,
                    ))
        return rules


@dataclass
class WiderWorldToContainer(Category):
    rules: List[WiderWorldToContainerRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data, where="wider_world_to_container"):
        return _from_mapping(cls, data, where, rules=_list_of(WiderWorldToContainerRule))

    def process(self, ctx: ProcessContext) -> list:
        return process_node(self.rules, ctx)


# ---------------- container_dnat -----------------
@dataclass
class ContainerDNATRule(Process):
    dst_network: str
    dst_container: str
    expose_port: List[ExposePort]
    src_network: Optional[str] = None
    src_container: Optional[str] = None

    @classmethod
    def from_dict(cls, data, where="container_dnat.rules"):
        rule = _from_mapping(cls, data, where, dst_network=_string, dst_container=_string,
                             expose_port=_list_of(ExposePort), src_network=_string, src_container=_string)
        if rule.src_container and not rule.src_network:
            raise ConfigurationError(f"{where}: src_container requires src_network")
        return rule

    def process(self, ctx: ProcessContext) -> list:
        dst_network = ctx.resolve_network(self.dst_network)
        dst_bridge = ctx.bridge_for(dst_network)

        src_bridge = None
        sources: Optional[List[Optional[str]]] = [None]
        if self.src_network:
            src_network = ctx.resolve_network(self.src_network)
            src_bridge = ctx.bridge_for(src_network)
            sources = _addresses_or_any(ctx, self.src_container, src_network)
            if sources is None:
                return []

        attachment = ctx.live_attachment(self.dst_container, dst_network)
        if attachment is None or not attachment.addresses:
            ctx.logger.debug(f"Container {self.dst_container!r} not attached to {dst_network.name!r}, skipping")
            return []

        marker = generate_marker(["container_dnat", self.src_network or "*", self.src_container or "*",
                                  dst_network.name, self.dst_container])
        rules = []
        for port in self.expose_port:
            for address in attachment.addresses:
                for src in sources:
                    if not _same_family(src, address):
                        continue
                    rules.append(Rule.build(
                        NAT, ctx.defaults.dnat_chain, DNAT, marker,
                        in_interface=src_bridge, source=src, protocol=port.protocol,
                        destination_port=port.host_port, destination_local=True,
                        dnat_to=join_host_port(address, port.target_port),
                    ))
                    rules.append(Rule.build(
                        FILTER, ctx.defaults.forward_chain, ACCEPT, marker,
                        in_interface=src_bridge, out_interface=dst_bridge, source=src, destination=address,
                        protocol=port.protocol, destination_port=port.target_port,
                    ))
        return rules


@dataclass
class ContainerDNAT(Category):
    rules: List[ContainerDNATRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data, where="container_dnat"):
        return _from_mapping(cls, data, where, rules=_list_of(ContainerDNATRule))

    def process(self, ctx: ProcessContext) -> list:
        return process_node(self.rules, ctx)


# ---------------- top level -----------------
CATEGORIES = (
    ("container_to_container", ContainerToContainer),
    ("container_to_wider_world", ContainerToWiderWorld),
    ("container_to_host", ContainerToHost),
    ("wider_world_to_container", WiderWorldToContainer),
    ("container_dnat", ContainerDNAT),
)


@dataclass
class Policy(Process):
    defaults: Defaults = field(default_factory=Defaults)
    container_to_container: Optional[ContainerToContainer] = None
    container_to_wider_world: Optional[ContainerToWiderWorld] = None
    container_to_host: Optional[ContainerToHost] = None
    wider_world_to_container: Optional[WiderWorldToContainer] = None
    container_dnat: Optional[ContainerDNAT] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Policy":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"policy: expected a mapping, got {type(data).__name__}")
        unknown = sorted(set(data) - {"defaults"} - {name for name, _ in CATEGORIES})
        if unknown:
            raise ConfigurationError(f"policy: unknown categories {unknown}")
        kwargs = {name: _category(category, data.get(name), name) for name, category in CATEGORIES}
        return cls(defaults=Defaults.from_dict(data.get("defaults")), **kwargs)

    def process(self, ctx: ProcessContext) -> list:
        categories = [getattr(self, name) for name, _ in CATEGORIES]
        rules = process_node(self.defaults, ctx)
        for category in categories:
            rules.extend(process_node(category, ctx))
        # Catch-all default policies must not shadow any category's explicit rules.
        for category in categories:
            if category is not None:
                rules.extend(category.process_defaults(ctx))
        return rules
