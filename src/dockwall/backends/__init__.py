"""Enforcement backends.

A backend receives the ordered list of ``ChainSetup``/``Rule`` records of one
cycle and installs it in a single step, replacing whatever an earlier cycle
installed. Applying the same list twice leaves the firewall unchanged.
"""

from __future__ import annotations

import abc
import logging
import subprocess
from typing import List, Optional

from ..errors import BackendError, ConfigurationError
from ..rules import ChainSetup, Rule


def run_command(cmd: List[str], input: Optional[str] = None) -> str:
    """Run a firewall command, raising BackendError if it fails."""
    logging.info(f"Running command: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, input=input.encode() if input is not None else None, check=True,
                                stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except FileNotFoundError as e:
        raise BackendError(f"{cmd[0]} not found", command=cmd) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="ignore")
        logging.error(f"Error running command: {' '.join(cmd)}\n{stderr}")
        raise BackendError(f"{cmd[0]} exited with status {e.returncode}", command=cmd, stderr=stderr) from e
    return result.stdout.decode(errors="ignore")


def split_rules(rules: list):
    setups: List[ChainSetup] = [r for r in rules if isinstance(r, ChainSetup)]
    others: List[Rule] = [r for r in rules if isinstance(r, Rule)]
    declared = {(s.table, s.chain) for s in setups}
    for rule in others:
        if (rule.table, rule.chain) not in declared:
            raise BackendError(f"rule {rule.marker} targets undeclared chain {rule.table}/{rule.chain}")
    return setups, others


class FirewallBackend(abc.ABC):
    name = ""

    @abc.abstractmethod
    def render(self, rules: list) -> str:
        """Return the backend's textual form of *rules* without applying them."""

    @abc.abstractmethod
    def apply(self, rules: list, ctx) -> None:
        """Install *rules*, replacing the ones installed by the previous cycle."""

    @abc.abstractmethod
    def cleanup(self) -> None:
        """Remove everything this backend installed."""


def get_backend(name: str, table: str = "dockwall") -> FirewallBackend:
    from .iptables import IptablesBackend
    from .nftables import NftablesBackend

    if name == "nftables":
        return NftablesBackend(table=table)
    if name == "iptables":
        return IptablesBackend()
    raise ConfigurationError(f"unknown backend {name!r}")
