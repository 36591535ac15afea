"""Exceptions raised by dockwall. Each one aborts the current reconciliation cycle."""

from __future__ import annotations

from typing import List, Optional


class DockwallError(Exception):
    pass


class TopologyError(DockwallError):
    """Docker could not be queried, or returned an unusable topology."""


class InvalidIdentifier(DockwallError):
    """A network or container identifier is malformed."""


class RuleDerivationError(DockwallError):
    """A policy entry could not be turned into rules."""


class ConfigurationError(RuleDerivationError):
    """The policy document itself is invalid. Retrying will not help."""


class BackendError(DockwallError):
    def __init__(self, message: str, command: Optional[List[str]] = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr

    def __str__(self) -> str:
        msg = super().__str__()
        if self.stderr:
            return f"{msg}\n{self.stderr.strip()}"
        return msg
