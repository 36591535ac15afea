"""dockwall - derive host firewall rules from Docker topology and a declarative policy."""

__version__ = "0.1.0"

from .errors import (
    BackendError, ConfigurationError, DockwallError, InvalidIdentifier, RuleDerivationError, TopologyError,
)
from .policy import Policy
from .process import ContainerFilter, Process, ProcessContext, ProcessingOptions, process_node
from .rules import ChainSetup, Rule, generate_marker
from .topology import Snapshot, bridge_name, network_for_container

get_bridge_name = bridge_name
