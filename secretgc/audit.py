# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC Audit Trail - Append-only record of finalizer releases.

Every time the collector drops its protection finalizer from a secret it
records which trigger did it, which finalizers were left on the secret,
and when deletion had been requested. Records are never modified.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import List, TypedDict

import aiosqlite
import structlog

from secretgc.exceptions import AuditError

logger = structlog.get_logger()


class ReleaseRecord(TypedDict):
    """Record of a released secret protection finalizer."""

    id: int  # Auto-increment
    operation_id: str  # ULID of the reconcile trigger
    namespace: str
    secret: str
    finalizer: str
    remaining_finalizers: List[str]
    deletion_requested_at: str | None  # ISO 8601
    released_at: str  # ISO 8601


async def init_audit_db(db_path: Path) -> None:
    """
    Initialize the audit database schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS releases (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    operation_id TEXT NOT NULL,
                    namespace TEXT NOT NULL,
                    secret TEXT NOT NULL,
                    finalizer TEXT NOT NULL,
                    remaining_finalizers TEXT NOT NULL,
                    deletion_requested_at TEXT,
                    released_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_releases_secret
                ON releases(namespace, secret)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_releases_released_at
                ON releases(released_at)
            """)

            await db.commit()

        logger.info("audit_db_initialized", db_path=str(db_path))

    except aiosqlite.Error as e:
        raise AuditError(
            f"Failed to initialize audit database: {e}",
            details={"db_path": str(db_path)},
        ) from e


async def record_release(
    db: aiosqlite.Connection,
    operation_id: str,
    namespace: str,
    secret: str,
    finalizer: str,
    remaining_finalizers: List[str],
    deletion_requested_at: datetime | None = None,
) -> int:
    """
    Record that the protection finalizer was removed from a secret.

    Args:
        db: SQLite database connection
        operation_id: ULID of the reconcile trigger that released it
        namespace: Secret namespace
        secret: Secret name
        finalizer: The removed finalizer
        remaining_finalizers: Finalizers still on the secret afterwards
        deletion_requested_at: The secret's deletion timestamp

    Returns:
        Release record ID
    """
    now = datetime.now(UTC).isoformat()

    cursor = await db.execute(
        """
        INSERT INTO releases
        (operation_id, namespace, secret, finalizer, remaining_finalizers,
         deletion_requested_at, released_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            operation_id,
            namespace,
            secret,
            finalizer,
            json.dumps(remaining_finalizers),
            deletion_requested_at.isoformat() if deletion_requested_at else None,
            now,
        ),
    )
    await db.commit()

    release_id = cursor.lastrowid

    logger.debug(
        "release_recorded",
        release_id=release_id,
        operation_id=operation_id,
        namespace=namespace,
        secret=secret,
    )

    return release_id


def _row_to_record(row) -> ReleaseRecord:
    return ReleaseRecord(
        id=row[0],
        operation_id=row[1],
        namespace=row[2],
        secret=row[3],
        finalizer=row[4],
        remaining_finalizers=json.loads(row[5]),
        deletion_requested_at=row[6],
        released_at=row[7],
    )


_SELECT_RELEASES = """
    SELECT id, operation_id, namespace, secret, finalizer,
           remaining_finalizers, deletion_requested_at, released_at
    FROM releases
"""


async def get_release_record(
    db: aiosqlite.Connection,
    namespace: str,
    secret: str,
) -> ReleaseRecord | None:
    """
    Get the most recent release record for a secret.

    Returns:
        Release record or None if the secret was never released
    """
    async with db.execute(
        _SELECT_RELEASES
        + """
        WHERE namespace = ? AND secret = ?
        ORDER BY id DESC
        LIMIT 1
        """,
        (namespace, secret),
    ) as cursor:
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None


async def list_releases(
    db: aiosqlite.Connection,
    limit: int = 50,
    offset: int = 0,
    namespace: str | None = None,
) -> List[ReleaseRecord]:
    """
    List releases with pagination, newest first.

    Args:
        db: SQLite database connection
        limit: Maximum number of records to return
        offset: Number of records to skip
        namespace: Optional filter by namespace

    Returns:
        List of release records
    """
    query = _SELECT_RELEASES
    params: List = []

    if namespace:
        query += " WHERE namespace = ?"
        params.append(namespace)

    query += " ORDER BY id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    records: List[ReleaseRecord] = []

    async with db.execute(query, params) as cursor:
        async for row in cursor:
            records.append(_row_to_record(row))

    return records


async def get_audit_stats(db: aiosqlite.Connection) -> dict:
    """
    Get audit trail statistics.

    Returns:
        Dict with audit statistics
    """
    stats = {}

    async with db.execute("SELECT COUNT(*) FROM releases") as cursor:
        row = await cursor.fetchone()
        stats["total_releases"] = row[0] if row else 0

    async with db.execute(
        "SELECT namespace, COUNT(*) FROM releases GROUP BY namespace"
    ) as cursor:
        stats["releases_by_namespace"] = {row[0]: row[1] async for row in cursor}

    async with db.execute("SELECT MAX(released_at) FROM releases") as cursor:
        row = await cursor.fetchone()
        stats["last_release_at"] = row[0] if row else None

    return stats
