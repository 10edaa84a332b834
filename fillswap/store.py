"""
In-memory state stores for fillswap.

Each component gets its store injected instead of reaching for module
globals, so tests (and callers) can create, share and throw away state
explicitly. A persistent backend only has to offer the same methods with
the same atomicity: `UTXOLedger.mark_spent` and everything done inside
`OrderStore.transaction()` / `SecretStore.transaction()` must be a single
check-and-set.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .core import (
    SpentRecord, SecretEntry, PartialFillOrder,
    ResolverAssignment, ResolverBid, PartialFillExecution,
)


class _KeyLock:
    """Per-outpoint lock plus the number of callers holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class UTXOLedger:
    """
    Outpoint usage ledger.

    Keys are "txid:vout". A key absent from the ledger is unspent.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._key_locks: Dict[str, _KeyLock] = {}
        self._spent: Dict[str, SpentRecord] = {}

    @contextmanager
    def key_lock(self, key: str) -> Iterator[None]:
        """
        Serialize all spend attempts on one outpoint.

        The lock exists only while someone holds or waits on it, so the
        ledger does not keep one lock per outpoint ever seen.
        """
        with self._lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]

    def active_locks(self) -> int:
        """Outpoints currently locked or waited on."""
        with self._lock:
            return len(self._key_locks)

    def get(self, key: str) -> Optional[SpentRecord]:
        with self._lock:
            return self._spent.get(key)

    def is_spent(self, key: str) -> bool:
        return self.get(key) is not None

    def mark_spent(self, key: str, record: SpentRecord) -> bool:
        """Atomically mark key spent. False if it already was."""
        with self._lock:
            if key in self._spent:
                return False
            self._spent[key] = record
            return True

    def replace(self, key: str, expected_txid: str, record: SpentRecord) -> bool:
        """Swap the record of a spent key if it still names expected_txid."""
        with self._lock:
            current = self._spent.get(key)
            if current is None or current.txid != expected_txid:
                return False
            self._spent[key] = record
            return True

    def clear(self):
        with self._lock:
            self._spent.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._spent)


class OrderStore:
    """Orders, resolver assignments, bids and executions."""

    def __init__(self):
        self._lock = threading.RLock()
        self.orders: Dict[str, PartialFillOrder] = {}
        self.assignments: Dict[str, List[ResolverAssignment]] = {}  # order_id -> active assignments
        self.bids: Dict[str, List[ResolverBid]] = {}                # partial_order_id -> bids
        self.executions: Dict[str, PartialFillExecution] = {}       # partial_order_id -> execution
        self.claims: Dict[str, object] = {}                         # partial_order_id -> in-flight claim token

    def transaction(self) -> threading.RLock:
        """Context manager guarding every read-modify-write on the maps."""
        return self._lock

    def clear(self):
        with self._lock:
            self.orders.clear()
            self.assignments.clear()
            self.bids.clear()
            self.executions.clear()
            self.claims.clear()


class SecretStore:
    """Secret -> hash entries plus the set of secrets bound to orders."""

    def __init__(self):
        self._lock = threading.RLock()
        self.entries: Dict[str, SecretEntry] = {}
        self.reserved: Dict[str, str] = {}  # secret -> owner (order id)

    def transaction(self) -> threading.RLock:
        return self._lock

    def clear(self):
        with self._lock:
            self.entries.clear()
            self.reserved.clear()
