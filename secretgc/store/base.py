# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Object Store Contract - What the collector needs from its object store.

The collector never owns persistence. It only needs point reads, indexed
and namespace-scoped listing, conditional updates keyed by resource
version, field index registration, and change notifications.
"""

from dataclasses import dataclass
from typing import Callable, List, Protocol, Tuple, Type, TypeVar

from secretgc.resources import StoredObject

T = TypeVar("T", bound=StoredObject)

# Extracts the indexed values of one object (empty list: not indexed)
IndexFunc = Callable[[StoredObject], List[str]]


@dataclass(frozen=True)
class ListOptions:
    """Filters for ObjectStore.list()."""

    # None lists across all namespaces
    namespace: str | None = None

    # (index_key, value) pair that must match a registered field index
    field_selector: Tuple[str, str] | None = None

    # Maximum number of objects returned, None for no limit
    limit: int | None = None


@dataclass(frozen=True)
class WatchEvent:
    """A committed change to a stored object."""

    type: str  # 'added', 'modified' or 'deleted'
    obj: StoredObject


class WatchHandler(Protocol):
    """Protocol for handling store change events."""

    async def __call__(self, event: WatchEvent) -> None:
        """
        Handle a change event.

        Args:
            event: The committed change, carrying the object as stored
        """
        ...


class ObjectStore(Protocol):
    """Protocol for the object store the collector runs against."""

    async def get(self, kind: Type[T], namespace: str, name: str) -> T:
        """Return one object; raises NotFoundError if it does not exist."""
        ...

    async def list(self, kind: Type[T], options: ListOptions) -> List[T]:
        """
        List objects of one kind.

        Raises NotFoundError if the kind is not served by this store.
        """
        ...

    async def update(self, obj: T) -> T:
        """
        Write an object back if its resource version is still current.

        Raises ConflictError on a stale resource version and
        NotFoundError if the object is gone. Returns the stored object.
        """
        ...

    async def register_index(
        self,
        kind: Type[StoredObject],
        index_key: str,
        extractor: IndexFunc,
    ) -> None:
        """Register a field index for one kind."""
        ...

    def subscribe(
        self,
        kind: Type[StoredObject],
        handler: WatchHandler,
    ) -> Callable[[], None]:
        """Deliver change events of one kind; returns an unsubscribe function."""
        ...

