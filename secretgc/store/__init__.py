# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Object Store Layer - Store contract plus an embedded SQLite implementation.
"""

from secretgc.store.base import (
    IndexFunc,
    ListOptions,
    ObjectStore,
    WatchEvent,
    WatchHandler,
)
from secretgc.store.sqlite_store import SQLiteObjectStore

__all__ = [
    "IndexFunc",
    "ListOptions",
    "ObjectStore",
    "SQLiteObjectStore",
    "WatchEvent",
    "WatchHandler",
]
