from __future__ import annotations

import copy
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from ..models.record import isoformat_utc
from ..models.registry import ColumnDescriptor, RegistryUpdate
from ..models.results import WriteOperation
from .document_store import PartitionSnapshot, TransactionsUnsupportedError

"""In-process document store.

Used for mock mode (DISABLE_DB_CONNECT=1) and by the test suite. Every read
returns deep copies so callers can never mutate stored state in place.
"""

__all__ = ["MemoryDocumentStore"]


class MemoryDocumentStore:
    def __init__(self, *, supports_transactions: bool = True) -> None:
        self.supports_transactions = supports_transactions
        self._documents: dict[str, dict[str, dict[str, Any]]] = {}
        self._registry: dict[str, dict[str, dict[str, Any]]] = {}
        self.write_count = 0

    @contextmanager
    def transaction(self) -> Iterator[MemoryDocumentStore]:
        if not self.supports_transactions:
            raise TransactionsUnsupportedError("in-memory store configured without transactions")
        saved = copy.deepcopy((self._documents, self._registry))
        try:
            yield self
        except Exception:
            self._documents, self._registry = saved
            raise

    def seed(self, sheet_origin: str, documents: Sequence[dict[str, Any]]) -> None:
        partition = self._documents.setdefault(sheet_origin, {})
        for doc in documents:
            partition[doc["identity"]] = copy.deepcopy(doc)

    def dump(self) -> dict[str, Any]:
        """Deep copy of the whole store (documents and registry)."""
        return copy.deepcopy({"documents": self._documents, "registry": self._registry})

    def documents(self, sheet_origin: str) -> list[dict[str, Any]]:
        partition = self._documents.get(sheet_origin, {})
        return [copy.deepcopy(partition[k]) for k in sorted(partition)]

    def find_by_identities(
        self, sheet_origin: str, identities: Sequence[str]
    ) -> dict[str, dict[str, Any]]:
        partition = self._documents.get(sheet_origin, {})
        return {i: copy.deepcopy(partition[i]) for i in set(identities) if i in partition}

    def bulk_write(self, sheet_origin: str, operations: Sequence[WriteOperation]) -> int:
        for op in operations:
            self.write_one(sheet_origin, op)
        return len(operations)

    def write_one(self, sheet_origin: str, operation: WriteOperation) -> None:
        document = operation.record.to_document()
        self._documents.setdefault(sheet_origin, {})[document["identity"]] = document
        self.write_count += 1

    def snapshot_partition(self, sheet_origin: str) -> PartitionSnapshot:
        return PartitionSnapshot(
            sheet_origin=sheet_origin,
            documents=self.documents(sheet_origin),
            registry=[copy.deepcopy(d) for d in self._registry.get(sheet_origin, {}).values()],
        )

    def restore_partition(self, snapshot: PartitionSnapshot) -> None:
        self._documents[snapshot.sheet_origin] = {
            doc["identity"]: copy.deepcopy(doc) for doc in snapshot.documents
        }
        self._registry[snapshot.sheet_origin] = {
            d["columnKey"]: copy.deepcopy(d) for d in snapshot.registry
        }

    def load_registry(self, sheet_origin: str) -> list[ColumnDescriptor]:
        active = [d for d in self._registry.get(sheet_origin, {}).values() if d["removedAt"] is None]
        active.sort(key=lambda d: (d["displayOrder"], d["columnKey"]))
        return [ColumnDescriptor.from_document(d) for d in active]

    def registry_documents(self, sheet_origin: str) -> list[dict[str, Any]]:
        """All definitions for an origin, soft-deleted ones included."""
        registry = self._registry.get(sheet_origin, {})
        return [copy.deepcopy(registry[k]) for k in sorted(registry)]

    def sync_registry(self, update: RegistryUpdate, now: datetime) -> None:
        stamp = isoformat_utc(now)
        registry = self._registry.setdefault(update.sheet_origin, {})
        for entry in update.entries:
            existing = registry.get(entry.key)
            registry[entry.key] = {
                **entry.to_document(),
                "detectedAt": existing["detectedAt"] if existing else stamp,
                "lastSeenAt": stamp,
                "removedAt": None,
                "sourceVersion": update.version,
            }
        active_keys = {entry.key for entry in update.entries}
        for entry in update.removed:
            current = registry.get(entry.key)
            if entry.key in active_keys or current is None or current["removedAt"] is not None:
                continue
            current["removedAt"] = stamp
            current["sourceVersion"] = update.version
