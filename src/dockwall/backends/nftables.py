"""nftables backend.

All rules live in one table of family inet, which this backend owns
completely::

    table inet dockwall {
        chain DOCKWALL-INPUT {
            type filter hook input priority 0; policy accept;
            ct state invalid drop comment "DOCKWALL-MARKER:defaults"
            ct state established,related accept comment "DOCKWALL-MARKER:defaults"
            iifname "br-0123456789ab" drop comment "DOCKWALL-MARKER:container_to_host;default"
        }
        chain DOCKWALL-PREROUTING {
            type nat hook prerouting priority -100; policy accept;
            iifname "eth0" fib daddr type local tcp dport 80 dnat ip to 172.18.0.2:80 comment "..."
        }
        ...
    }

The table is replaced in a single ``nft -f -`` transaction (declare, delete,
recreate), so a failed apply leaves the previous rule set in place.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from ..errors import BackendError
from ..rules import DNAT, FILTER, IPV4, IPV6, ChainSetup, Rule, split_host_port
from . import FirewallBackend, run_command, split_rules

PRIORITIES = {
    (FILTER, "input"): 0,
    (FILTER, "forward"): 0,
    ("nat", "prerouting"): -100,
    ("nat", "postrouting"): 100,
}


def _quote(value: str) -> str:
    return '"' + value.replace('"', '\\"') + '"'


def _ip_keyword(family: str, address: str) -> str:
    if family == IPV4:
        return "ip"
    if family == IPV6:
        return "ip6"
    raise BackendError(f"cannot match on address {address} without an address family")


def render_rule(rule: Rule) -> str:
    parts: List[str] = []
    if rule.in_interface:
        parts.append(f"iifname {_quote(rule.in_interface)}")
    if rule.out_interface:
        parts.append(f"oifname {_quote(rule.out_interface)}")
    if rule.source:
        parts.append(f"{_ip_keyword(rule.family, rule.source)} saddr {rule.source}")
    if rule.destination:
        parts.append(f"{_ip_keyword(rule.family, rule.destination)} daddr {rule.destination}")
    if rule.destination_local:
        parts.append("fib daddr type local")
    if rule.protocol:
        if rule.destination_port:
            parts.append(f"{rule.protocol} dport {rule.destination_port}")
        else:
            parts.append(f"meta l4proto {rule.protocol}")
    if rule.ct_states:
        parts.append(f"ct state {','.join(rule.ct_states)}")

    if rule.verdict == DNAT:
        address, port = split_host_port(rule.dnat_to)
        target = f"[{address}]" if ":" in address and port else address
        if port:
            target = f"{target}:{port}"
        parts.append(f"dnat {_ip_keyword(rule.family, address)} to {target}")
    else:
        parts.append(rule.verdict)

    parts.append(f"comment {_quote(rule.marker)}")
    return " ".join(parts)


class NftablesBackend(FirewallBackend):
    name = "nftables"
    FAMILY = "inet"

    def __init__(self, table: str = "dockwall"):
        self.table = table

    def render(self, rules: list) -> str:
        """Construct the nftables table spec."""
        setups, others = split_rules(rules)
        by_chain: Dict[Tuple[str, str], List[Rule]] = {(s.table, s.chain): [] for s in setups}
        for rule in others:
            by_chain[(rule.table, rule.chain)].append(rule)

        spec = [f"table {self.FAMILY} {self.table} {{\n"]
        for setup in setups:
            spec.append(self._render_chain(setup, by_chain[(setup.table, setup.chain)]))
        spec.append("}\n")
        return "".join(spec)

    def _render_chain(self, setup: ChainSetup, rules: List[Rule]) -> str:
        priority = PRIORITIES.get((setup.table, setup.hook), 0)
        out = [
            f"    chain {setup.chain} {{\n",
            f"        type {setup.table} hook {setup.hook} priority {priority}; policy {setup.policy};\n",
        ]
        for rule in rules:
            out.append(f"        {render_rule(rule)}\n")
        out.append("    }\n")
        return "".join(out)

    def apply(self, rules: list, ctx) -> None:
        spec = self.render(rules)
        # Declaring the table first makes the delete valid even on the first run.
        script = (f"table {self.FAMILY} {self.table} {{}}\n"
                  f"delete table {self.FAMILY} {self.table}\n"
                  f"{spec}")
        logging.debug(f"Applying nftables spec:\n{script}")
        run_command(["nft", "-f", "-"], input=script)
        logging.info(f"Applied {len(rules)} rules to table {self.FAMILY} {self.table}")

    def cleanup(self) -> None:
        run_command(["nft", "delete", "table", self.FAMILY, self.table])
