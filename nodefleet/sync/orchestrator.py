"""Configuration push to nodes.

Each node sync is a strict sequence: mark syncing, choose the config, back
up the remote file, write the new one, validate it remotely (rolling back on
rejection or when the write or check itself fails), restart the service,
wait for it to settle, and verify it is running. Fleet-wide runs go through
``run_in_batches``.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..batching import run_in_batches
from ..data.models import Node, NodeStatus, SyncOutcome, utcnow
from ..data.persistence import DataStore
from ..errors import ConfigValidationError, FleetError, ServiceError
from ..log import debug, log
from ..pool.pool import ConnectionPool
from ..server.config import SyncConfig
from .remote import HysteriaControl
from .render import check_custom_config, is_trivial_custom_config, render_node_config


def _error_text(exc: Exception) -> str:
    return exc.detail if isinstance(exc, FleetError) else str(exc)


class SyncOrchestrator:
    """Pushes configuration to nodes and records the resulting status.

    The orchestrator is the only component that moves a node between
    statuses.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        store: DataStore,
        sync_config: Optional[SyncConfig] = None,
        auth_url: str = "",
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.pool = pool
        self.store = store
        self.config = sync_config or SyncConfig()
        self.auth_url = auth_url
        self._sleep = sleep_fn
        self._sync_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_sync_time: Optional[datetime] = None

    # --- Helpers ---

    def _control(self, shell: Any, node: Node) -> HysteriaControl:
        return HysteriaControl(
            shell,
            node,
            service_names=self.config.service_names,
            binary=self.config.hysteria_binary,
            command_timeout=self.config.command_timeout,
            log_tail_lines=self.config.log_tail_lines,
        )

    def build_config(self, node: Node, outcome: Optional[SyncOutcome] = None) -> Tuple[str, bool]:
        """Pick the config text to push.

        Returns (content, is_custom).

        Raises:
            ConfigValidationError: if a non-trivial custom config is malformed.
        """
        if node.use_custom_config:
            if is_trivial_custom_config(node.custom_config):
                msg = "Custom config is empty or too short; using generated config"
                log(f"[sync] {node.name}: {msg}")
                if outcome is not None:
                    outcome.log(msg)
            else:
                problems = check_custom_config(node.custom_config)
                if problems:
                    raise ConfigValidationError(
                        node.name, f"Custom config invalid: {', '.join(problems)}"
                    )
                return node.custom_config.strip() + "\n", True

        auth_url = node.auth_url or self.auth_url
        return render_node_config(node, auth_url), False

    def _rollback(
        self,
        control: HysteriaControl,
        node: Node,
        original: Optional[bytes],
        outcome: SyncOutcome,
        message: str,
        cause: Optional[Exception] = None,
    ) -> ConfigValidationError:
        """Restore the pre-push config and return the error to raise."""
        try:
            control.restore_config(original)
        except Exception as exc:
            outcome.log(f"Rollback failed: {exc}")
            return ConfigValidationError(node.name, f"{message}, rollback failed", exc)
        outcome.log("Previous config restored")
        return ConfigValidationError(node.name, message, cause)

    # --- Single node ---

    def sync_node(self, node: Node) -> SyncOutcome:
        """Push config to one node and verify the service.

        Never raises for node-level failures; they end up in the outcome and
        the node's status.
        """
        outcome = SyncOutcome(node_id=node.id, node_name=node.name)
        self.store.set_node_status(node.id, NodeStatus.SYNCING)
        log(f"[sync] {node.name} ({node.ip}): sync started")

        try:
            content, is_custom = self.build_config(node, outcome)
            outcome.log("Using custom config" if is_custom else "Generated config")

            with self.pool.shell(node) as shell:
                control = self._control(shell, node)

                original = control.backup_config()
                outcome.log(
                    f"Backup saved to {node.paths.backup}"
                    if original is not None
                    else "No existing config to back up"
                )

                try:
                    control.write_config(content)
                    outcome.log(f"Config written to {node.paths.config}")
                    valid, output = control.check_config()
                except Exception as exc:
                    detail = _error_text(exc)
                    outcome.log(f"Push interrupted: {detail}")
                    raise self._rollback(
                        control, node, original, outcome, f"Config push failed: {detail}", exc
                    )
                if not valid:
                    outcome.log(f"Validation failed: {output}")
                    raise self._rollback(
                        control, node, original, outcome, f"Config validation failed: {output}"
                    )
                outcome.log("Config validated")

                control.restart_service()
                outcome.log("Service restart requested")
                self._sleep(self.config.settle_seconds)

                if not control.is_active():
                    tail = control.log_tail()
                    if tail:
                        outcome.log(f"Service logs:\n{tail}")
                    raise ServiceError(node.name, "Service not running after restart", tail)

        except Exception as exc:
            error = _error_text(exc)
            if not isinstance(exc, FleetError):
                log(f"[sync] {node.name}: unexpected {type(exc).__name__}")
            outcome.success = False
            outcome.status = NodeStatus.ERROR
            outcome.error = error
            outcome.log(f"Error: {error}")
            self.store.set_node_status(node.id, NodeStatus.ERROR, last_error=error)
            log(f"[sync] {node.name}: failed - {error}")
            return outcome

        outcome.success = True
        outcome.status = NodeStatus.ONLINE
        outcome.log("Service is running")
        self.store.set_node_status(node.id, NodeStatus.ONLINE, last_error="", last_sync=utcnow())
        log(f"[sync] {node.name}: online")
        return outcome

    # --- Fleet ---

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def request_stop(self) -> None:
        """Stop submitting further batches; in-flight nodes finish."""
        self._stop_event.set()

    def _resolve_nodes(self, nodes: Optional[Sequence[Node]]) -> List[Node]:
        if nodes is None:
            return self.store.list_nodes(active_only=True)
        return [n for n in nodes if n.active]

    def _run_all(self, nodes: Optional[Sequence[Node]]) -> List[SyncOutcome]:
        try:
            targets = self._resolve_nodes(nodes)
            log(f"[sync] Syncing {len(targets)} nodes (batch {self.config.batch_size})")
            results = run_in_batches(
                targets,
                self.sync_node,
                batch_size=self.config.batch_size,
                stop_event=self._stop_event,
                name="sync",
            )
            outcomes = []
            for result in results:
                if result.ok:
                    outcomes.append(result.value)
                else:
                    node = result.item
                    outcomes.append(SyncOutcome(
                        node_id=node.id,
                        node_name=node.name,
                        status=NodeStatus.ERROR,
                        error=str(result.error),
                    ))
            self.last_sync_time = utcnow()
            ok = sum(1 for o in outcomes if o.success)
            log(f"[sync] Done: {ok}/{len(outcomes)} online")
            return outcomes
        finally:
            self._sync_lock.release()

    def sync_all(self, nodes: Optional[Sequence[Node]] = None) -> List[SyncOutcome]:
        """Sync every active node (or the given ones) in batches.

        Returns an empty list when another fleet sync is running.
        """
        if not self._sync_lock.acquire(blocking=False):
            log("[sync] Sync already in progress, skipping")
            return []
        self._stop_event.clear()
        return self._run_all(nodes)

    def sync_all_async(self, nodes: Optional[Sequence[Node]] = None) -> bool:
        """Start a fleet sync on a background thread.

        Returns False if a sync is already running.
        """
        if not self._sync_lock.acquire(blocking=False):
            log("[sync] Sync already in progress, skipping")
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_all, args=(nodes,), name="fleet-sync", daemon=True
        )
        self._thread.start()
        return True

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until a background sync started by ``sync_all_async`` ends."""
        if self._thread is not None:
            self._thread.join(timeout)

    # --- Provisioning ---

    def setup_port_hopping(self, node: Node, port_range: Optional[str] = None) -> SyncOutcome:
        """Install UDP port-hopping redirect rules. Status is not changed."""
        outcome = SyncOutcome(node_id=node.id, node_name=node.name)
        port_range = port_range or node.port_range
        try:
            with self.pool.shell(node) as shell:
                result = self._control(shell, node).setup_port_hopping(port_range)
        except (FleetError, ValueError, OSError) as exc:
            outcome.error = _error_text(exc)
            outcome.log(f"Error: {outcome.error}")
            log(f"[sync] {node.name}: port hopping failed - {outcome.error}")
            return outcome

        if result.output:
            outcome.log(result.output)
        outcome.success = result.ok
        if not result.ok:
            outcome.error = f"Port hopping script exited with {result.exit_code}"
        log(f"[sync] {node.name}: port hopping {port_range} -> {node.port} "
            f"{'ok' if result.ok else 'failed'}")
        return outcome

    def setup_port_hopping_all(self, nodes: Optional[Sequence[Node]] = None) -> List[SyncOutcome]:
        targets = self._resolve_nodes(nodes)
        results = run_in_batches(
            targets, self.setup_port_hopping, batch_size=self.config.batch_size, name="hopping"
        )
        return [r.value for r in results if r.ok]

    def get_system_stats(self, node: Node) -> Optional[Dict[str, Any]]:
        """Load, memory, disk and uptime of a node, or None if unreachable."""
        try:
            with self.pool.shell(node) as shell:
                stats = self._control(shell, node).system_stats()
        except FleetError as exc:
            debug(f"[sync] {node.name}: system stats unavailable - {exc.detail}")
            return None
        return stats
