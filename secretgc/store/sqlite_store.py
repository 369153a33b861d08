# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC SQLite Store - Embedded object store with field indexes.

Objects are stored as JSON bodies keyed by (kind, namespace, name) with an
integer resource version. Every write is a compare-and-update on that
version, so a writer holding a stale copy gets a ConflictError instead of
silently overwriting somebody else's change.

Field indexes are maintained in a side table: for each registered
(kind, index_key) the extractor runs on every write and its values are
stored next to the object identity, which makes "does any object of this
kind in namespace N reference S" a single indexed lookup.

Deletion follows finalizer semantics:
- delete() on an object with finalizers only sets the deletion timestamp
- an update() leaving a deletion-pending object without finalizers
  removes it for good
- the deletion timestamp, once set, is never cleared by an update
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, Iterable, List, Tuple, Type, TypeVar

import aiosqlite
import structlog

from secretgc.errors import explain_unregistered_index
from secretgc.exceptions import ConflictError, NotFoundError, StoreError
from secretgc.resources import ALL_KINDS, StoredObject
from secretgc.store.base import IndexFunc, ListOptions, WatchEvent, WatchHandler

logger = structlog.get_logger()

T = TypeVar("T", bound=StoredObject)


class SQLiteObjectStore:
    """
    Object store backed by a single SQLite database file.

    Args:
        db_path: Path to the SQLite database file
        served_kinds: Kinds this store knows about; listing any other kind
            raises NotFoundError, like a cluster without that resource type
        timeout: Seconds to wait for a competing writer's lock
    """

    def __init__(
        self,
        db_path: Path,
        served_kinds: Iterable[Type[StoredObject]] = ALL_KINDS,
        timeout: float = 30.0,
    ) -> None:
        self.db_path = db_path
        self.timeout = timeout
        self._served: Dict[str, Type[StoredObject]] = {k.kind: k for k in served_kinds}
        self._indexers: Dict[Tuple[str, str], IndexFunc] = {}
        self._handlers: Dict[str, List[WatchHandler]] = {}

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.timeout)

    async def init(self) -> None:
        """
        Initialize the store schema.

        Creates tables if they don't exist. This is idempotent.
        """
        try:
            async with self._connect() as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS objects (
                        kind TEXT NOT NULL,
                        namespace TEXT NOT NULL,
                        name TEXT NOT NULL,
                        resource_version INTEGER NOT NULL,
                        body TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (kind, namespace, name)
                    )
                """)

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS field_index (
                        kind TEXT NOT NULL,
                        index_key TEXT NOT NULL,
                        namespace TEXT NOT NULL,
                        value TEXT NOT NULL,
                        name TEXT NOT NULL,
                        PRIMARY KEY (kind, index_key, namespace, value, name)
                    )
                """)

                # Reverse lookup for index maintenance on write
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_field_index_object
                    ON field_index(kind, namespace, name)
                """)

                await db.commit()

            logger.info("object_store_initialized", db_path=str(self.db_path))

        except aiosqlite.Error as e:
            raise StoreError(
                f"Failed to initialize object store: {e}",
                details={"db_path": str(self.db_path)},
            ) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, kind: Type[T], namespace: str, name: str) -> T:
        """
        Get one object.

        Raises:
            NotFoundError: If the object (or its kind) does not exist
            StoreError: On database failure
        """
        self._require_served(kind)
        try:
            async with self._connect() as db:
                row = await self._fetch_row(db, kind.kind, namespace, name)
        except aiosqlite.Error as e:
            raise StoreError(
                f"Failed to read {kind.kind} {namespace}/{name}: {e}",
                details={"kind": kind.kind, "namespace": namespace, "name": name},
            ) from e

        if row is None:
            raise NotFoundError(
                f"{kind.kind} {namespace}/{name} not found",
                details={"kind": kind.kind, "namespace": namespace, "name": name},
            )
        return _load(kind, row[0], row[1])

    async def list(self, kind: Type[T], options: ListOptions) -> List[T]:
        """
        List objects of one kind, optionally by field index.

        Results are ordered by namespace and name.

        Raises:
            NotFoundError: If the kind is not served by this store
            StoreError: On database failure or an unregistered field index
        """
        self._require_served(kind)

        params: List[object] = [kind.kind]
        if options.field_selector is not None:
            index_key, value = options.field_selector
            if (kind.kind, index_key) not in self._indexers:
                raise StoreError(
                    explain_unregistered_index(kind.kind, index_key),
                    details={"kind": kind.kind, "index_key": index_key},
                )
            query = """
                SELECT o.body, o.resource_version
                FROM field_index f
                JOIN objects o
                  ON o.kind = f.kind AND o.namespace = f.namespace AND o.name = f.name
                WHERE f.kind = ? AND f.index_key = ? AND f.value = ?
            """
            params.extend([index_key, value])
            if options.namespace is not None:
                query += " AND f.namespace = ?"
                params.append(options.namespace)
            query += " ORDER BY o.namespace, o.name"
        else:
            query = "SELECT body, resource_version FROM objects WHERE kind = ?"
            if options.namespace is not None:
                query += " AND namespace = ?"
                params.append(options.namespace)
            query += " ORDER BY namespace, name"

        if options.limit is not None:
            query += " LIMIT ?"
            params.append(options.limit)

        try:
            async with self._connect() as db:
                async with db.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreError(
                f"Failed to list {kind.kind}: {e}",
                details={"kind": kind.kind, "namespace": options.namespace},
            ) from e

        return [_load(kind, body, version) for body, version in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, obj: T) -> T:
        """
        Create a new object with resource version 1.

        Raises:
            ConflictError: If an object with the same identity exists
            NotFoundError: If the kind is not served
        """
        kind = type(obj)
        self._require_served(kind)
        namespace, name = obj.key
        stored = _clone(obj)
        stored.metadata.resource_version = 1
        now = _now()

        try:
            async with self._connect() as db:
                try:
                    await db.execute(
                        """
                        INSERT INTO objects
                            (kind, namespace, name, resource_version, body, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (kind.kind, namespace, name, 1, _dump(stored), now, now),
                    )
                except aiosqlite.IntegrityError as e:
                    raise ConflictError(
                        f"{kind.kind} {namespace}/{name} already exists",
                        details={"kind": kind.kind, "namespace": namespace, "name": name},
                    ) from e
                await self._write_index_rows(db, stored)
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"Failed to create {kind.kind} {namespace}/{name}: {e}") from e

        await self._emit(WatchEvent(type="added", obj=_clone(stored)))
        return stored

    async def update(self, obj: T) -> T:
        """
        Conditionally write an object back.

        The write only succeeds if obj.metadata.resource_version still
        matches the stored version.

        Returns:
            The object as stored (with its new resource version)

        Raises:
            ConflictError: If the stored version moved on
            NotFoundError: If the object no longer exists
        """
        kind = type(obj)
        self._require_served(kind)
        namespace, name = obj.key
        expected = obj.metadata.resource_version
        details = {"kind": kind.kind, "namespace": namespace, "name": name}

        try:
            async with self._connect() as db:
                row = await self._fetch_row(db, kind.kind, namespace, name)
                if row is None:
                    raise NotFoundError(f"{kind.kind} {namespace}/{name} not found", details=details)

                current = _load(kind, row[0], row[1])
                if current.metadata.resource_version != expected:
                    raise ConflictError(
                        f"{kind.kind} {namespace}/{name} was modified concurrently",
                        details={
                            **details,
                            "expected_version": expected,
                            "current_version": current.metadata.resource_version,
                        },
                    )

                stored = _clone(obj)
                stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
                stored.metadata.resource_version = expected + 1

                if stored.metadata.deletion_timestamp and not stored.metadata.finalizers:
                    cursor = await db.execute(
                        """
                        DELETE FROM objects
                        WHERE kind = ? AND namespace = ? AND name = ? AND resource_version = ?
                        """,
                        (kind.kind, namespace, name, expected),
                    )
                    event_type = "deleted"
                else:
                    cursor = await db.execute(
                        """
                        UPDATE objects
                        SET body = ?, resource_version = ?, updated_at = ?
                        WHERE kind = ? AND namespace = ? AND name = ? AND resource_version = ?
                        """,
                        (
                            _dump(stored),
                            stored.metadata.resource_version,
                            _now(),
                            kind.kind,
                            namespace,
                            name,
                            expected,
                        ),
                    )
                    event_type = "modified"

                # Another connection wrote between our read and our write
                if cursor.rowcount == 0:
                    raise ConflictError(
                        f"{kind.kind} {namespace}/{name} was modified concurrently",
                        details=details,
                    )

                if event_type == "deleted":
                    await self._delete_index_rows(db, kind.kind, namespace, name)
                else:
                    await self._write_index_rows(db, stored)
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(
                f"Failed to update {kind.kind} {namespace}/{name}: {e}", details=details
            ) from e

        if event_type == "deleted":
            logger.debug("object_finalized", **details)

        await self._emit(WatchEvent(type=event_type, obj=_clone(stored)))
        return stored

    async def delete(self, kind: Type[StoredObject], namespace: str, name: str) -> bool:
        """
        Request deletion of an object.

        Objects with finalizers get a deletion timestamp and stay until
        their finalizers are removed; objects without are removed at once.

        Returns:
            True if the object was removed, False if deletion is pending

        Raises:
            NotFoundError: If the object does not exist
        """
        current = await self.get(kind, namespace, name)

        if current.metadata.finalizers:
            if current.metadata.deletion_timestamp is not None:
                return False
            await self._mark_deleted(current)
            return False

        details = {"kind": kind.kind, "namespace": namespace, "name": name}
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    DELETE FROM objects
                    WHERE kind = ? AND namespace = ? AND name = ? AND resource_version = ?
                    """,
                    (kind.kind, namespace, name, current.metadata.resource_version),
                )
                if cursor.rowcount == 0:
                    raise ConflictError(
                        f"{kind.kind} {namespace}/{name} was modified concurrently",
                        details=details,
                    )
                await self._delete_index_rows(db, kind.kind, namespace, name)
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(
                f"Failed to delete {kind.kind} {namespace}/{name}: {e}", details=details
            ) from e

        await self._emit(WatchEvent(type="deleted", obj=current))
        return True

    async def _mark_deleted(self, current: StoredObject) -> None:
        kind = type(current)
        namespace, name = current.key
        marked = _clone(current)
        marked.metadata.deletion_timestamp = datetime.now(UTC)
        marked.metadata.resource_version = current.metadata.resource_version + 1

        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE objects
                    SET body = ?, resource_version = ?, updated_at = ?
                    WHERE kind = ? AND namespace = ? AND name = ? AND resource_version = ?
                    """,
                    (
                        _dump(marked),
                        marked.metadata.resource_version,
                        _now(),
                        kind.kind,
                        namespace,
                        name,
                        current.metadata.resource_version,
                    ),
                )
                if cursor.rowcount == 0:
                    raise ConflictError(
                        f"{kind.kind} {namespace}/{name} was modified concurrently",
                        details={"kind": kind.kind, "namespace": namespace, "name": name},
                    )
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"Failed to mark {kind.kind} {namespace}/{name} deleted: {e}") from e

        logger.debug(
            "deletion_requested",
            kind=kind.kind,
            namespace=namespace,
            name=name,
            finalizers=marked.metadata.finalizers,
        )
        await self._emit(WatchEvent(type="modified", obj=_clone(marked)))

    # ------------------------------------------------------------------
    # Field indexes
    # ------------------------------------------------------------------

    async def register_index(
        self,
        kind: Type[StoredObject],
        index_key: str,
        extractor: IndexFunc,
    ) -> None:
        """
        Register a field index for one kind.

        Objects that already exist are indexed immediately. Registering a
        kind this store does not serve is accepted; it simply never
        has entries.
        """
        self._indexers[(kind.kind, index_key)] = extractor

        if kind.kind not in self._served:
            logger.debug("index_registered_for_unserved_kind", kind=kind.kind, index_key=index_key)
            return

        try:
            async with self._connect() as db:
                await db.execute(
                    "DELETE FROM field_index WHERE kind = ? AND index_key = ?",
                    (kind.kind, index_key),
                )
                async with db.execute(
                    "SELECT body, resource_version FROM objects WHERE kind = ?",
                    (kind.kind,),
                ) as cursor:
                    rows = await cursor.fetchall()

                entries = []
                for body, version in rows:
                    obj = _load(kind, body, version)
                    for value in extractor(obj):
                        entries.append((kind.kind, index_key, obj.metadata.namespace, value, obj.metadata.name))

                await db.executemany(
                    """
                    INSERT OR IGNORE INTO field_index (kind, index_key, namespace, value, name)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    entries,
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(
                f"Failed to build index {index_key} for {kind.kind}: {e}",
                details={"kind": kind.kind, "index_key": index_key},
            ) from e

        logger.debug("index_registered", kind=kind.kind, index_key=index_key, backfilled=len(rows))

    async def _write_index_rows(self, db: aiosqlite.Connection, obj: StoredObject) -> None:
        namespace, name = obj.key
        await self._delete_index_rows(db, obj.kind, namespace, name)
        for (kind_name, index_key), extractor in self._indexers.items():
            if kind_name != obj.kind:
                continue
            for value in extractor(obj):
                await db.execute(
                    """
                    INSERT OR IGNORE INTO field_index (kind, index_key, namespace, value, name)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (kind_name, index_key, namespace, value, name),
                )

    async def _delete_index_rows(
        self, db: aiosqlite.Connection, kind: str, namespace: str, name: str
    ) -> None:
        await db.execute(
            "DELETE FROM field_index WHERE kind = ? AND namespace = ? AND name = ?",
            (kind, namespace, name),
        )

    # ------------------------------------------------------------------
    # Watch
    # ------------------------------------------------------------------

    def subscribe(self, kind: Type[StoredObject], handler: WatchHandler):
        """
        Deliver committed change events of one kind to handler.

        Returns:
            Function that removes the subscription
        """
        handlers = self._handlers.setdefault(kind.kind, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def _emit(self, event: WatchEvent) -> None:
        for handler in list(self._handlers.get(event.obj.kind, [])):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "watch_handler_failed",
                    kind=event.obj.kind,
                    event=event.type,
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_served(self, kind: Type[StoredObject]) -> None:
        if kind.kind not in self._served:
            raise NotFoundError(
                f"Kind {kind.kind} is not served by this store",
                details={"kind": kind.kind},
            )

    async def _fetch_row(
        self, db: aiosqlite.Connection, kind: str, namespace: str, name: str
    ) -> Tuple[str, int] | None:
        async with db.execute(
            """
            SELECT body, resource_version FROM objects
            WHERE kind = ? AND namespace = ? AND name = ?
            """,
            (kind, namespace, name),
        ) as cursor:
            return await cursor.fetchone()


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _dump(obj: StoredObject) -> str:
    return json.dumps(obj.to_dict(), sort_keys=True)


def _load(kind: Type[T], body: str, resource_version: int) -> T:
    obj = kind.from_dict(json.loads(body))
    obj.metadata.resource_version = resource_version
    return obj


def _clone(obj: T) -> T:
    return type(obj).from_dict(obj.to_dict())
