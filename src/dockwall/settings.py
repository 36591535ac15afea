"""Process settings, read from the environment.

Environment Variables:
  LOG_LEVEL          (default INFO)
  DOCKWALL_CONFIG    (default /etc/dockwall/dockwall.yml) -> policy file or directory
  DOCKWALL_BACKEND   (default nftables) -> nftables | iptables
  CONTAINER_FILTER   (default all) -> all | running
  DRY_RUN            (default false) -> derive and log rules, never apply them
  CLEAN_ON_EXIT      (default true) -> remove our rules on shutdown
  RUN_ONCE           (default false) -> apply once and exit instead of following events
  EVENT_BACKOFF_SECS (default 2) -> sleep before reconnecting to the event stream
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .errors import ConfigurationError
from .process import ContainerFilter

BACKENDS = ("nftables", "iptables")


def env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    log_level: str = "INFO"
    config_path: str = "/etc/dockwall/dockwall.yml"
    backend: str = "nftables"
    container_filter: ContainerFilter = ContainerFilter.ALL
    dry_run: bool = False
    clean_on_exit: bool = True
    run_once: bool = False
    event_backoff: float = 2.0

    @classmethod
    def from_env(cls) -> "Settings":
        backend = os.getenv("DOCKWALL_BACKEND", "nftables").strip().lower()
        if backend not in BACKENDS:
            raise ConfigurationError(f"DOCKWALL_BACKEND must be one of {list(BACKENDS)}, got {backend!r}")
        raw_filter = os.getenv("CONTAINER_FILTER", "all").strip().lower()
        try:
            container_filter = ContainerFilter(raw_filter)
        except ValueError:
            raise ConfigurationError(f"CONTAINER_FILTER must be 'all' or 'running', got {raw_filter!r}") from None
        try:
            event_backoff = float(os.getenv("EVENT_BACKOFF_SECS", "2"))
        except ValueError:
            raise ConfigurationError("EVENT_BACKOFF_SECS must be a number") from None

        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            config_path=os.getenv("DOCKWALL_CONFIG", "/etc/dockwall/dockwall.yml"),
            backend=backend,
            container_filter=container_filter,
            dry_run=env_bool("DRY_RUN", False),
            clean_on_exit=env_bool("CLEAN_ON_EXIT", True),
            run_once=env_bool("RUN_ONCE", False),
            event_backoff=event_backoff,
        )
