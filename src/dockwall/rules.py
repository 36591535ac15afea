"""Backend-neutral rule records.

The derivation engine only ever produces these two record types. Backends
(see ``dockwall.backends``) turn an ordered list of them into nftables or
iptables syntax. Every record carries a marker so a backend can find and
replace the rules a previous cycle installed.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

MARKER_TAG = "DOCKWALL-MARKER"

# Tables
FILTER = "filter"
NAT = "nat"

# Hooks
INPUT = "input"
FORWARD = "forward"
PREROUTING = "prerouting"
POSTROUTING = "postrouting"

# Verdicts
ACCEPT = "accept"
DROP = "drop"
REJECT = "reject"
MASQUERADE = "masquerade"
DNAT = "dnat"

FILTER_VERDICTS = (ACCEPT, DROP, REJECT)

# Families
ANY = "any"
IPV4 = "ipv4"
IPV6 = "ipv6"


def generate_marker(components: Iterable[str]) -> str:
    return f"{MARKER_TAG}:{';'.join(components)}"


def address_family(*addresses: Optional[str]) -> str:
    """Return the family shared by all given addresses/CIDRs, or ANY if none are set."""
    family = ANY
    for addr in addresses:
        if not addr:
            continue
        version = ipaddress.ip_network(addr, strict=False).version
        this = IPV4 if version == 4 else IPV6
        if family not in (ANY, this):
            raise ValueError(f"mixed address families in one rule: {addresses}")
        family = this
    return family


@dataclass(frozen=True)
class ChainSetup:
    """Declares a chain, the hook it attaches to and its default policy."""

    table: str
    chain: str
    hook: str
    policy: str
    marker: str


@dataclass(frozen=True)
class Rule:
    table: str
    chain: str
    verdict: str
    marker: str
    family: str = ANY
    in_interface: Optional[str] = None
    out_interface: Optional[str] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    protocol: Optional[str] = None
    destination_port: Optional[str] = None
    ct_states: Tuple[str, ...] = ()
    # Only match packets addressed to the host itself (DNAT entry points).
    destination_local: bool = False
    # "<address>" or "<address>:<port>", only for DNAT.
    dnat_to: Optional[str] = None

    @classmethod
    def build(cls, table: str, chain: str, verdict: str, marker: str, **kwargs) -> "Rule":
        """Create a rule, inferring its family from the addresses it matches on."""
        dnat_address = None
        if kwargs.get("dnat_to"):
            dnat_address = split_host_port(kwargs["dnat_to"])[0]
        family = address_family(kwargs.get("source"), kwargs.get("destination"), dnat_address)
        if kwargs.get("destination_port") is not None:
            kwargs["destination_port"] = str(kwargs["destination_port"])
        return cls(table=table, chain=chain, verdict=verdict, marker=marker, family=family, **kwargs)


def split_host_port(value: str) -> Tuple[str, Optional[str]]:
    """Split ``1.2.3.4:80``, ``[fd00::2]:80`` or a bare address into (address, port)."""
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        return host, rest[1:] if rest.startswith(":") else None
    if value.count(":") == 1:
        host, port = value.split(":")
        return host, port
    return value, None


def join_host_port(address: str, port: Optional[object]) -> str:
    if port is None:
        return address
    if ":" in address:
        return f"[{address}]:{port}"
    return f"{address}:{port}"
