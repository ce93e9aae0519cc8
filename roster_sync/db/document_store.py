from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import psycopg2
from psycopg2.extras import Json, execute_values

from ..config.loader import StoreConfig
from ..models.registry import ColumnDescriptor, RegistryUpdate
from ..models.results import WriteOperation
from .compat import is_transaction_unsupported_error

"""Document store collaborator.

``DocumentStore`` is the persistence seam used by the upsert engine and the
orchestrator. ``PostgresDocumentStore`` keeps one JSONB document per
(sheet_origin, identity) and the column registry in ``column_definitions``.

Batch writes go through psycopg2.extras.execute_values with ``page_size``
tuning and an optional ``metrics_callback`` receiving one BatchMetrics per
execute_values call.

Transaction capability comes from ``store.transactions``:
- enabled  -> transaction() always used
- disabled -> autocommit connection, upsert engine takes the fallback path
- auto     -> transaction() used until the driver reports transactions are
              unavailable (compat shim); later runs go straight to fallback
"""

__all__ = [
    "DocumentStoreError",
    "TransactionsUnsupportedError",
    "BatchMetrics",
    "PartitionSnapshot",
    "DocumentStore",
    "PostgresDocumentStore",
    "build_dsn",
    "DEVICE_TABLE",
    "REGISTRY_TABLE",
]

DEVICE_TABLE = "devices"
REGISTRY_TABLE = "column_definitions"

_DEVICE_COLUMNS = (
    "sheet_origin",
    "identity",
    "legacy_identity",
    "schema_version",
    "content_hash",
    "document",
    "updated_at",
)
_REGISTRY_COLUMNS = (
    "sheet_origin",
    "column_key",
    "label",
    "display_order",
    "data_type",
    "nullable",
    "detected_at",
    "last_seen_at",
    "removed_at",
    "source_version",
)

_CREATE_DEVICE_TABLE = f"""
CREATE TABLE IF NOT EXISTS {DEVICE_TABLE} (
    sheet_origin    text NOT NULL,
    identity        text NOT NULL,
    legacy_identity text,
    schema_version  text,
    content_hash    text NOT NULL,
    document        jsonb NOT NULL,
    updated_at      timestamptz NOT NULL DEFAULT now(),
    PRIMARY KEY (sheet_origin, identity)
)
"""

_CREATE_REGISTRY_TABLE = f"""
CREATE TABLE IF NOT EXISTS {REGISTRY_TABLE} (
    sheet_origin   text NOT NULL,
    column_key     text NOT NULL,
    label          text NOT NULL,
    display_order  integer NOT NULL,
    data_type      text NOT NULL,
    nullable       boolean NOT NULL,
    detected_at    timestamptz NOT NULL,
    last_seen_at   timestamptz NOT NULL,
    removed_at     timestamptz,
    source_version text,
    PRIMARY KEY (sheet_origin, column_key)
)
"""

_UPSERT_DEVICES = (
    f"INSERT INTO {DEVICE_TABLE} ({', '.join(_DEVICE_COLUMNS)}) VALUES %s "
    "ON CONFLICT (sheet_origin, identity) DO UPDATE SET "
    "legacy_identity = EXCLUDED.legacy_identity, "
    "schema_version = EXCLUDED.schema_version, "
    "content_hash = EXCLUDED.content_hash, "
    "document = EXCLUDED.document, "
    "updated_at = EXCLUDED.updated_at"
)
_DEVICE_TEMPLATE = "(%s, %s, %s, %s, %s, %s, now())"

_UPSERT_REGISTRY = (
    f"INSERT INTO {REGISTRY_TABLE} ({', '.join(_REGISTRY_COLUMNS)}) VALUES %s "
    "ON CONFLICT (sheet_origin, column_key) DO UPDATE SET "
    "label = EXCLUDED.label, "
    "display_order = EXCLUDED.display_order, "
    "data_type = EXCLUDED.data_type, "
    "nullable = EXCLUDED.nullable, "
    "last_seen_at = EXCLUDED.last_seen_at, "
    "removed_at = NULL, "
    "source_version = EXCLUDED.source_version"
)
_INSERT_REGISTRY = f"INSERT INTO {REGISTRY_TABLE} ({', '.join(_REGISTRY_COLUMNS)}) VALUES %s"


class DocumentStoreError(Exception):
    pass


class TransactionsUnsupportedError(DocumentStoreError):
    """Multi-document transactions are not available on this store."""


@dataclass(frozen=True)
class BatchMetrics:
    """Timing of a single execute_values call."""
    batch_size: int
    elapsed_seconds: float
    start_time: float
    end_time: float


@dataclass(frozen=True)
class PartitionSnapshot:
    """In-memory copy of one sheet origin, used to undo a failed fallback run."""
    sheet_origin: str
    documents: list[dict[str, Any]] = field(default_factory=list)
    registry: list[dict[str, Any]] = field(default_factory=list)


class DocumentStore(Protocol):
    supports_transactions: bool

    def transaction(self) -> Any: ...

    def find_by_identities(
        self, sheet_origin: str, identities: Sequence[str]
    ) -> dict[str, dict[str, Any]]: ...

    def bulk_write(self, sheet_origin: str, operations: Sequence[WriteOperation]) -> int: ...

    def write_one(self, sheet_origin: str, operation: WriteOperation) -> None: ...

    def snapshot_partition(self, sheet_origin: str) -> PartitionSnapshot: ...

    def restore_partition(self, snapshot: PartitionSnapshot) -> None: ...

    def load_registry(self, sheet_origin: str) -> list[ColumnDescriptor]: ...

    def sync_registry(self, update: RegistryUpdate, now: datetime) -> None: ...


def build_dsn(cfg: StoreConfig) -> str:
    """Connection string from the (already env-overridden) store config."""
    if cfg.dsn:
        return cfg.dsn
    dsn = (
        f"host={cfg.host or 'localhost'} port={cfg.port or 5432} "
        f"user={cfg.user or 'postgres'} dbname={cfg.database or 'postgres'}"
    )
    if cfg.password:
        dsn += f" password={cfg.password}"
    return dsn


def _device_row(sheet_origin: str, document: dict[str, Any]) -> tuple[Any, ...]:
    return (
        sheet_origin,
        document["identity"],
        document.get("legacyIdentity"),
        document.get("schemaVersion"),
        document.get("contentHash") or "",
        Json(document),
    )


class PostgresDocumentStore:
    def __init__(
        self,
        connection: Any,
        *,
        transactions: str = "auto",
        page_size: int = 1000,
        metrics_callback: Callable[[BatchMetrics], None] | None = None,
    ) -> None:
        if transactions not in ("auto", "enabled", "disabled"):
            raise ValueError(f"unknown transactions mode: {transactions}")
        self._conn = connection
        self._mode = transactions
        self._page_size = page_size
        self._metrics_callback = metrics_callback
        self._in_transaction = False
        self._transactions_unavailable = False
        self._conn.autocommit = transactions == "disabled"

    @classmethod
    def connect(cls, cfg: StoreConfig, **kwargs: Any) -> PostgresDocumentStore:  # pragma: no cover
        try:
            conn = psycopg2.connect(build_dsn(cfg))
        except psycopg2.Error as e:
            raise DocumentStoreError(f"connect failed: {e}") from e
        return cls(conn, transactions=cfg.transactions, **kwargs)

    def close(self) -> None:  # pragma: no cover (thin wrapper)
        self._conn.close()

    @property
    def supports_transactions(self) -> bool:
        if self._mode == "enabled":
            return True
        if self._mode == "disabled":
            return False
        return not self._transactions_unavailable

    def _translate(self, error: Exception) -> DocumentStoreError:
        if is_transaction_unsupported_error(error):
            self._transactions_unavailable = True
            return TransactionsUnsupportedError(str(error))
        return DocumentStoreError(str(error))

    def _autocommitting(self) -> bool:
        return not self._in_transaction and not self._conn.autocommit

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        # 単発操作は transaction() の外では即 COMMIT
        try:
            with self._conn.cursor() as cur:
                yield cur
            if self._autocommitting():
                self._conn.commit()
        except psycopg2.Error as e:
            if self._autocommitting():
                self._conn.rollback()
            raise self._translate(e) from e

    @contextmanager
    def transaction(self) -> Iterator[PostgresDocumentStore]:
        if not self.supports_transactions:
            raise TransactionsUnsupportedError("transactions are disabled for this store")
        if self._in_transaction:
            raise DocumentStoreError("nested transactions are not supported")
        self._in_transaction = True
        try:
            yield self
            try:
                self._conn.commit()
            except psycopg2.Error as e:
                raise self._translate(e) from e
        except Exception:
            self._conn.rollback()
            raise
        finally:
            self._in_transaction = False

    def _execute_batch(
        self, cur: Any, sql: str, rows: list[tuple[Any, ...]], template: str | None = None
    ) -> int:
        if not rows:
            return 0
        start_time = time.time()
        try:
            execute_values(cur, sql, rows, template=template, page_size=self._page_size)
        finally:
            end_time = time.time()
            if self._metrics_callback is not None:
                self._metrics_callback(
                    BatchMetrics(
                        batch_size=len(rows),
                        elapsed_seconds=end_time - start_time,
                        start_time=start_time,
                        end_time=end_time,
                    )
                )
        return len(rows)

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(_CREATE_DEVICE_TABLE)
            cur.execute(_CREATE_REGISTRY_TABLE)

    def find_by_identities(
        self, sheet_origin: str, identities: Sequence[str]
    ) -> dict[str, dict[str, Any]]:
        wanted = sorted({i for i in identities if i})
        if not wanted:
            return {}
        with self._cursor() as cur:
            cur.execute(
                f"SELECT identity, document FROM {DEVICE_TABLE} "
                "WHERE sheet_origin = %s AND identity = ANY(%s)",
                (sheet_origin, wanted),
            )
            rows = cur.fetchall()
        found: dict[str, dict[str, Any]] = {}
        for identity, document in rows:
            found[identity] = json.loads(document) if isinstance(document, str) else document
        return found

    def bulk_write(self, sheet_origin: str, operations: Sequence[WriteOperation]) -> int:
        rows = [_device_row(sheet_origin, op.record.to_document()) for op in operations]
        with self._cursor() as cur:
            return self._execute_batch(cur, _UPSERT_DEVICES, rows, template=_DEVICE_TEMPLATE)

    def write_one(self, sheet_origin: str, operation: WriteOperation) -> None:
        row = _device_row(sheet_origin, operation.record.to_document())
        with self._cursor() as cur:
            self._execute_batch(cur, _UPSERT_DEVICES, [row], template=_DEVICE_TEMPLATE)

    def snapshot_partition(self, sheet_origin: str) -> PartitionSnapshot:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT document FROM {DEVICE_TABLE} WHERE sheet_origin = %s ORDER BY identity",
                (sheet_origin,),
            )
            documents = [
                json.loads(doc) if isinstance(doc, str) else doc for (doc,) in cur.fetchall()
            ]
            cur.execute(
                f"SELECT {', '.join(_REGISTRY_COLUMNS[1:])} FROM {REGISTRY_TABLE} "
                "WHERE sheet_origin = %s ORDER BY column_key",
                (sheet_origin,),
            )
            registry = [
                {
                    "columnKey": key,
                    "label": label,
                    "displayOrder": order,
                    "dataType": data_type,
                    "nullable": nullable,
                    "detectedAt": detected_at,
                    "lastSeenAt": last_seen_at,
                    "removedAt": removed_at,
                    "sourceVersion": source_version,
                }
                for (
                    key,
                    label,
                    order,
                    data_type,
                    nullable,
                    detected_at,
                    last_seen_at,
                    removed_at,
                    source_version,
                ) in cur.fetchall()
            ]
        return PartitionSnapshot(sheet_origin=sheet_origin, documents=documents, registry=registry)

    def restore_partition(self, snapshot: PartitionSnapshot) -> None:
        origin = snapshot.sheet_origin
        device_rows = [_device_row(origin, doc) for doc in snapshot.documents]
        registry_rows = [
            (
                origin,
                d["columnKey"],
                d["label"],
                d["displayOrder"],
                d["dataType"],
                d["nullable"],
                d["detectedAt"],
                d["lastSeenAt"],
                d["removedAt"],
                d["sourceVersion"],
            )
            for d in snapshot.registry
        ]
        with self._cursor() as cur:
            cur.execute(f"DELETE FROM {DEVICE_TABLE} WHERE sheet_origin = %s", (origin,))
            self._execute_batch(cur, _UPSERT_DEVICES, device_rows, template=_DEVICE_TEMPLATE)
            cur.execute(f"DELETE FROM {REGISTRY_TABLE} WHERE sheet_origin = %s", (origin,))
            self._execute_batch(cur, _INSERT_REGISTRY, registry_rows)

    def load_registry(self, sheet_origin: str) -> list[ColumnDescriptor]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT column_key, label, display_order, data_type, nullable FROM {REGISTRY_TABLE} "
                "WHERE sheet_origin = %s AND removed_at IS NULL ORDER BY display_order, column_key",
                (sheet_origin,),
            )
            rows = cur.fetchall()
        return [
            ColumnDescriptor.from_document(
                {
                    "columnKey": key,
                    "label": label,
                    "displayOrder": order,
                    "dataType": data_type,
                    "nullable": nullable,
                }
            )
            for key, label, order, data_type, nullable in rows
        ]

    def sync_registry(self, update: RegistryUpdate, now: datetime) -> None:
        rows = [
            (
                update.sheet_origin,
                entry.key,
                entry.label,
                entry.display_order,
                entry.data_type.value,
                entry.nullable,
                now,
                now,
                None,
                update.version,
            )
            for entry in update.entries
        ]
        active_keys = {entry.key for entry in update.entries}
        removed_keys = sorted({e.key for e in update.removed} - active_keys)
        with self._cursor() as cur:
            self._execute_batch(cur, _UPSERT_REGISTRY, rows)
            if removed_keys:
                cur.execute(
                    f"UPDATE {REGISTRY_TABLE} SET removed_at = %s, source_version = %s "
                    "WHERE sheet_origin = %s AND column_key = ANY(%s) AND removed_at IS NULL",
                    (now, update.version, update.sheet_origin, removed_keys),
                )
