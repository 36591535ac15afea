"""Keep the firewall in sync with Docker.

Docker events only *request* a reconciliation. One worker thread performs
the cycles, so at most one cycle ever talks to the backend. Requests that
arrive while a cycle runs are coalesced into a single follow-up cycle.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from docker import from_env

from .errors import ConfigurationError, DockwallError
from .process import ProcessContext, ProcessingOptions

EVENT_FILTERS = {"type": ["container", "network"]}
WATCHED_ACTIONS = {
    "container": {"start", "restart", "die", "destroy"},
    "network": {"create", "destroy", "connect", "disconnect"},
}


class Reconciler:
    def __init__(self, docker_client, load_policy: Callable, backend,
                 options: Optional[ProcessingOptions] = None, dry_run: bool = False,
                 event_backoff: float = 2.0, client_factory: Callable = from_env):
        self.docker = docker_client
        self.load_policy = load_policy
        self.backend = backend
        self.options = options or ProcessingOptions()
        self.dry_run = dry_run
        self.event_backoff = event_backoff
        self.client_factory = client_factory
        self.running = True
        self.cycles = 0

        self._cycle_lock = threading.Lock()
        self._cond = threading.Condition()
        self._pending = False
        self._busy = False
        self._worker: Optional[threading.Thread] = None

    # ---------------- Cycles -----------------
    def run_cycle(self) -> list:
        """Run one full load -> snapshot -> derive -> apply cycle. Errors propagate."""
        with self._cycle_lock:
            policy = self.load_policy()
            ctx = ProcessContext(self.docker, policy, self.options, self.backend, dry_run=self.dry_run)
            rules = ctx.process()
            self.cycles += 1
            return rules

    def safe_cycle(self) -> bool:
        try:
            rules = self.run_cycle()
        except ConfigurationError as e:
            logging.critical(f"Invalid policy, no rules changed until it is fixed: {e}")
        except DockwallError as e:
            logging.error(f"Reconciliation failed, previous rules stay in place: {e}")
        except Exception as e:
            logging.exception(f"Unexpected error during reconciliation: {e}")
        else:
            logging.info(f"Reconciliation finished, {len(rules)} rules")
            return True
        return False

    def request(self) -> None:
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def _work(self) -> None:
        while True:
            with self._cond:
                while self.running and not self._pending:
                    self._cond.wait()
                if not self.running:
                    return
                self._pending = False
                self._busy = True
            try:
                self.safe_cycle()
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()

    def start(self) -> None:
        self._worker = threading.Thread(target=self._work, name="dockwall-reconciler", daemon=True)
        self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._cond:
            self.running = False
            self._cond.notify_all()
        if self._worker is not None and self._worker is not threading.current_thread():
            self._worker.join(timeout)

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Block until no request is pending and no cycle is running (used by tests)."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and not self._busy, timeout)

    # ---------------- Docker events -----------------
    def handle_event(self, event: dict) -> bool:
        kind = event.get("Type")
        action = (event.get("Action") or "").split(":", 1)[0]
        if action not in WATCHED_ACTIONS.get(kind, ()):
            return False
        actor = event.get("Actor", {}).get("ID", "")
        logging.info(f"{kind.capitalize()} {actor[:12]} {action}, scheduling reconciliation")
        self.request()
        return True

    def listen(self) -> None:
        events = self.docker.events(decode=True, filters=EVENT_FILTERS)
        logging.info("Listening for Docker events...")
        while self.running:
            try:
                for event in events:
                    if not self.running:
                        return
                    self.handle_event(event)
            except Exception as e:
                # The raw stream also raises urllib3 errors when the daemon resets the connection.
                logging.error(f"Event stream error: {e}. Reconnecting...")
            if not self.running:
                return
            time.sleep(self.event_backoff)
            try:
                self.docker = self.client_factory()
                events = self.docker.events(decode=True, filters=EVENT_FILTERS)
            except Exception as e:
                logging.error(f"Reconnecting to Docker failed: {e}")
                continue
            # Events may have been missed while disconnected.
            self.request()
