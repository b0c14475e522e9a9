"""Session-scoped memoization of transformed inputs and bundle ledgers."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from ..models import Asset, Fingerprint

Order = Tuple[int, int]


@dataclass(frozen=True)
class CacheEntry:
    """Transformed output for one input, valid while its fingerprint matches."""

    bundle: str
    input_id: str
    fingerprint: Fingerprint
    asset: Asset


class BundleLedger:
    """Ordered record of the known-good inputs composing a bundle."""

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}

    def record(self, input_id: str, order: Order) -> None:
        self._orders[input_id] = order

    def discard(self, input_id: str) -> bool:
        return self._orders.pop(input_id, None) is not None

    def __contains__(self, input_id: object) -> bool:
        return input_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def keys(self) -> List[str]:
        """Input ids sorted by declaration order, not insertion order."""
        return [key for key, _ in sorted(self._orders.items(), key=lambda item: (item[1], item[0]))]


class AssetCache:
    """Stores transformed assets keyed by bundle name and input identity.

    Mutations for a bundle happen under that bundle's lock; pipelines hold the
    same lock for a whole run so a bundle has a single writer at a time.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Dict[str, CacheEntry]] = {}
        self._ledgers: Dict[str, BundleLedger] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock(self, bundle: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(bundle)
            if lock is None:
                lock = threading.RLock()
                self._locks[bundle] = lock
            return lock

    def get(self, bundle: str, input_id: str, fingerprint: Fingerprint) -> Optional[CacheEntry]:
        with self.lock(bundle):
            entry = self._entries.get(bundle, {}).get(input_id)
            if entry is None or entry.fingerprint != fingerprint:
                return None
            return entry

    def fingerprint(self, bundle: str, input_id: str) -> Optional[Fingerprint]:
        with self.lock(bundle):
            entry = self._entries.get(bundle, {}).get(input_id)
            return entry.fingerprint if entry is not None else None

    def put(
        self,
        bundle: str,
        input_id: str,
        fingerprint: Fingerprint,
        asset: Asset,
        *,
        order: Order = (0, 0),
    ) -> CacheEntry:
        entry = CacheEntry(bundle=bundle, input_id=input_id, fingerprint=fingerprint, asset=asset)
        with self.lock(bundle):
            self._entries.setdefault(bundle, {})[input_id] = entry
            self._ledger(bundle).record(input_id, order)
        return entry

    def reorder(self, bundle: str, input_id: str, order: Order) -> None:
        with self.lock(bundle):
            if input_id in self._entries.get(bundle, {}):
                self._ledger(bundle).record(input_id, order)

    def forget(self, bundle: str, input_id: str) -> Optional[CacheEntry]:
        """Drop the entry, then its ledger slice, so it cannot be reassembled."""
        with self.lock(bundle):
            entry = self._entries.get(bundle, {}).pop(input_id, None)
            self._ledger(bundle).discard(input_id)
            return entry

    def inputs(self, bundle: str) -> List[str]:
        with self.lock(bundle):
            return list(self._entries.get(bundle, {}))

    def assemble(self, bundle: str) -> List[CacheEntry]:
        """Currently cached entries in declaration order; read-only."""
        with self.lock(bundle):
            entries = self._entries.get(bundle, {})
            ledger = self._ledgers.get(bundle)
            if ledger is None:
                return []
            return [entries[key] for key in ledger.keys() if key in entries]

    def bundles(self) -> Iterator[str]:
        with self._guard:
            names = list(self._entries)
        return iter(names)

    def clear(self, bundle: Optional[str] = None) -> None:
        names = [bundle] if bundle is not None else list(self.bundles())
        for name in names:
            with self.lock(name):
                self._entries.pop(name, None)
                self._ledgers.pop(name, None)

    def _ledger(self, bundle: str) -> BundleLedger:
        ledger = self._ledgers.get(bundle)
        if ledger is None:
            ledger = BundleLedger()
            self._ledgers[bundle] = ledger
        return ledger


__all__ = ["AssetCache", "BundleLedger", "CacheEntry"]
