"""iptables backend.

Rules go into custom chains (named by the policy defaults) which are loaded
with ``iptables-restore --noflush``: declaring a chain in the restore input
flushes it, so every apply replaces the chain contents. Each custom chain is
hooked into its built-in chain with a jump rule tagged with a marker; stale
or duplicate jumps are found via ``iptables -S`` and removed afterwards.
"""

from __future__ import annotations

import logging
import shlex
from typing import Dict, List, Tuple

from ..rules import ANY, DNAT, DROP, IPV4, IPV6, ChainSetup, Rule, generate_marker
from . import FirewallBackend, run_command, split_rules

TOOLS = {
    IPV4: ("iptables", "iptables-restore"),
    IPV6: ("ip6tables", "ip6tables-restore"),
}


def jump_marker(chain: str) -> str:
    return generate_marker(["jump", chain])


def render_rule(rule: Rule) -> str:
    parts = [f"-A {rule.chain}"]
    if rule.in_interface:
        parts.append(f"-i {rule.in_interface}")
    if rule.out_interface:
        parts.append(f"-o {rule.out_interface}")
    if rule.source:
        parts.append(f"-s {rule.source}")
    if rule.destination:
        parts.append(f"-d {rule.destination}")
    if rule.destination_local:
        parts.append("-m addrtype --dst-type LOCAL")
    if rule.protocol:
        parts.append(f"-p {rule.protocol}")
        if rule.destination_port:
            parts.append(f"--dport {rule.destination_port.replace('-', ':')}")
    if rule.ct_states:
        parts.append(f"-m conntrack --ctstate {','.join(s.upper() for s in rule.ct_states)}")
    parts.append(f'-m comment --comment "{rule.marker}"')
    if rule.verdict == DNAT:
        parts.append(f"-j DNAT --to-destination {rule.dnat_to}")
    else:
        parts.append(f"-j {rule.verdict.upper()}")
    return " ".join(parts)


class IptablesBackend(FirewallBackend):
    name = "iptables"

    def __init__(self, families: Tuple[str, ...] = (IPV4, IPV6)):
        self.families = families
        self._installed: List[ChainSetup] = []

    def render_family(self, rules: list, family: str) -> str:
        setups, others = split_rules(rules)
        tables: Dict[str, List[str]] = {}
        for setup in setups:
            tables.setdefault(setup.table, []).append(f":{setup.chain} - [0:0]")
        for rule in others:
            if rule.family not in (ANY, family):
                continue
            tables[rule.table].append(render_rule(rule))
        # Custom chains have no policy; a trailing catch-all rule stands in for it.
        for setup in setups:
            if setup.policy == DROP:
                tables[setup.table].append(f'-A {setup.chain} -m comment --comment "{setup.marker}" -j DROP')

        out = []
        for table, lines in tables.items():
            out.append(f"*{table}")
            out.extend(lines)
            out.append("COMMIT")
        return "\n".join(out) + "\n"

    def render(self, rules: list) -> str:
        return "".join(f"# {family}\n{self.render_family(rules, family)}" for family in self.families)

    def apply(self, rules: list, ctx) -> None:
        setups, _ = split_rules(rules)
        for family in self.families:
            cmd, restore = TOOLS[family]
            run_command([restore, "--noflush"], input=self.render_family(rules, family))
            for setup in setups:
                self._ensure_jump(cmd, setup)
        self._installed = setups
        logging.info(f"Applied {len(rules)} rules via iptables")

    def _jump_rules(self, cmd: str, table: str, builtin: str, chain: str) -> List[List[str]]:
        listing = run_command([cmd, "-t", table, "-S", builtin])
        marker = jump_marker(chain)
        rules = [shlex.split(line) for line in listing.splitlines() if marker in line]
        return [args for args in rules if marker in args]

    def _ensure_jump(self, cmd: str, setup: ChainSetup) -> None:
        builtin = setup.hook.upper()
        existing = self._jump_rules(cmd, setup.table, builtin, setup.chain)
        if not existing:
            run_command([cmd, "-t", setup.table, "-I", builtin, "1",
                         "-m", "comment", "--comment", jump_marker(setup.chain), "-j", setup.chain])
            return
        # Keep one jump, drop leftovers from earlier runs.
        for args in existing[1:]:
            run_command([cmd, "-t", setup.table, "-D", *args[1:]])

    def cleanup(self) -> None:
        for family in self.families:
            cmd, _ = TOOLS[family]
            for setup in self._installed:
                builtin = setup.hook.upper()
                for args in self._jump_rules(cmd, setup.table, builtin, setup.chain):
                    logging.info(f"Removing jump to {setup.chain} from {builtin}")
                    run_command([cmd, "-t", setup.table, "-D", *args[1:]])
                run_command([cmd, "-t", setup.table, "-F", setup.chain])
                run_command([cmd, "-t", setup.table, "-X", setup.chain])
        self._installed = []
