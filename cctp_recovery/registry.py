"""
CCTP Recovery - Pending bridge registry

Keyed store of bridge recovery state (key = burn tx hash). All mutation goes
through one lock; callers get copies, never the live entries. Status moves
forward only:

    pending_attestation -> attestation_ready -> mint_completed
                                             \\-> expired

mint_completed entries stay visible until they have not been touched for
``retention_seconds`` (24h by default) and are pruned on the next listing.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace

from .config import DB_PATH, RECOVERY_SETTINGS
from .errors import RecoveryInProgress
from .models import (
    STATUS_ATTESTATION_READY, STATUS_EXPIRED, STATUS_MINT_COMPLETED, STATUS_RANK, PendingBridge,
)
from .store import BridgeStore

logger = logging.getLogger(__name__)


class PendingBridgeRegistry:
    def __init__(self, store=None, retention_seconds=None, clock=time.time):
        self.store = store
        self.retention_seconds = (RECOVERY_SETTINGS["completed_retention_seconds"]
                                  if retention_seconds is None else retention_seconds)
        self.clock = clock
        self._lock = threading.RLock()
        self._bridges = {}
        self._in_progress = set()
        if store is not None:
            for bridge in store.load_all():
                self._bridges[bridge.burn_tx_hash] = bridge

    def __len__(self):
        with self._lock:
            return len(self._bridges)

    def __contains__(self, burn_tx_hash):
        with self._lock:
            return burn_tx_hash in self._bridges

    def _persist(self, bridge):
        if self.store is not None:
            self.store.save(bridge)

    # ------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------

    def add(self, burn_tx_hash, recipient, amount, message_hash=None):
        """
        Start tracking a burn. Adding a tracked burn keeps its status and only
        fills in a missing message hash.
        """
        with self._lock:
            bridge = self._bridges.get(burn_tx_hash)
            if bridge is None:
                now = self.clock()
                bridge = PendingBridge(
                    burn_tx_hash=burn_tx_hash, recipient=recipient, amount=str(amount),
                    created_at=now, last_checked=now, message_hash=message_hash,
                )
                self._bridges[burn_tx_hash] = bridge
                logger.info("Tracking pending bridge %s (%d tracked)", burn_tx_hash, len(self._bridges))
            elif message_hash and not bridge.message_hash:
                bridge.message_hash = message_hash
            self._persist(bridge)
            return replace(bridge)

    def remove(self, burn_tx_hash):
        with self._lock:
            bridge = self._bridges.pop(burn_tx_hash, None)
            if bridge is None:
                return False
            if self.store is not None:
                self.store.delete(burn_tx_hash)
            logger.info("Removed bridge %s (%d remaining)", burn_tx_hash, len(self._bridges))
            return True

    def get(self, burn_tx_hash):
        with self._lock:
            bridge = self._bridges.get(burn_tx_hash)
            return replace(bridge) if bridge else None

    def list(self):
        """All tracked bridges, oldest first. Prunes stale mint_completed entries."""
        with self._lock:
            now = self.clock()
            stale = [
                key for key, bridge in self._bridges.items()
                if bridge.status == STATUS_MINT_COMPLETED and now - bridge.last_checked > self.retention_seconds
            ]
            for key in stale:
                self.remove(key)
            if stale:
                logger.info("Pruned %d completed bridge(s)", len(stale))
            bridges = sorted(self._bridges.values(), key=lambda b: b.created_at)
            return [replace(b) for b in bridges]

    def snapshot(self, now=None):
        """Status listing rows for the dashboard endpoint."""
        now = self.clock() if now is None else now
        return [bridge.to_dict(now) for bridge in self.list()]

    def touch(self, burn_tx_hash):
        """Record an orchestrator pass. last_checked never moves backwards."""
        with self._lock:
            bridge = self._bridges.get(burn_tx_hash)
            if bridge is None:
                return False
            bridge.last_checked = max(bridge.last_checked, self.clock())
            self._persist(bridge)
            return True

    # ------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------

    def _transition(self, burn_tx_hash, status, **fields):
        with self._lock:
            bridge = self._bridges.get(burn_tx_hash)
            if bridge is None:
                return False
            if STATUS_RANK[status] < STATUS_RANK[bridge.status] or (
                    STATUS_RANK[status] == STATUS_RANK[bridge.status] and status != bridge.status):
                logger.warning("Refusing to move bridge %s from %s back to %s",
                               burn_tx_hash, bridge.status, status)
                return False
            bridge.status = status
            for name, value in fields.items():
                if value is not None:
                    setattr(bridge, name, value)
            bridge.last_checked = max(bridge.last_checked, self.clock())
            self._persist(bridge)
            logger.info("Bridge %s is now %s", burn_tx_hash, status)
            return True

    def mark_attestation_ready(self, burn_tx_hash, message_hash=None):
        return self._transition(burn_tx_hash, STATUS_ATTESTATION_READY, message_hash=message_hash)

    def mark_mint_completed(self, burn_tx_hash, mint_tx_hash):
        return self._transition(burn_tx_hash, STATUS_MINT_COMPLETED, mint_tx_hash=mint_tx_hash)

    def mark_expired(self, burn_tx_hash):
        return self._transition(burn_tx_hash, STATUS_EXPIRED)

    # ------------------------------------------------------------
    # Re-entry guard
    # ------------------------------------------------------------

    @contextmanager
    def guard(self, burn_tx_hash):
        """
        Hold the "in progress" flag for one burn for the duration of the block.

        Raises RecoveryInProgress if another recovery of the same burn holds it.
        """
        with self._lock:
            if burn_tx_hash in self._in_progress:
                raise RecoveryInProgress(burn_tx_hash)
            self._in_progress.add(burn_tx_hash)
        try:
            yield
        finally:
            with self._lock:
                self._in_progress.discard(burn_tx_hash)

    def in_progress(self, burn_tx_hash):
        with self._lock:
            return burn_tx_hash in self._in_progress


_registry = None
_registry_lock = threading.Lock()


def get_registry():
    """Process-wide registry, persisted to RECOVERY_DB_PATH when it is set."""
    global _registry
    with _registry_lock:
        if _registry is None:
            store = BridgeStore(DB_PATH) if DB_PATH else None
            _registry = PendingBridgeRegistry(store=store)
        return _registry
