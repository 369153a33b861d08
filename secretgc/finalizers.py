# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Finalizer helpers - Deletion-pending checks and finalizer add/remove.

Writes go through ObjectStore.update(), so they carry the resource
version read together with the object and fail with ConflictError when
anybody else changed the object in the meantime.
"""

from typing import TypeVar

import structlog

from secretgc.config import SECRET_PROTECTION_FINALIZER
from secretgc.resources import Secret, StoredObject
from secretgc.store.base import ObjectStore

logger = structlog.get_logger()

T = TypeVar("T", bound=StoredObject)


def marked_for_deletion(obj: StoredObject) -> bool:
    """True once somebody asked the store to delete obj."""
    return obj.metadata.deletion_timestamp is not None


def contains_finalizer(obj: StoredObject, finalizer: str) -> bool:
    return finalizer in obj.metadata.finalizers


async def add_finalizer(store: ObjectStore, obj: T, finalizer: str) -> T:
    """
    Add a finalizer to obj and persist it.

    No write happens if the finalizer is already present.

    Raises:
        ConflictError: If obj is stale
    """
    if contains_finalizer(obj, finalizer):
        return obj

    obj.metadata.finalizers = [*obj.metadata.finalizers, finalizer]
    return await store.update(obj)


async def remove_finalizer(store: ObjectStore, obj: T, finalizer: str) -> T:
    """
    Remove exactly one finalizer from obj and persist it.

    Other finalizers are kept in their original order. No write happens
    if the finalizer is not present.

    Raises:
        ConflictError: If obj is stale
    """
    if not contains_finalizer(obj, finalizer):
        return obj

    obj.metadata.finalizers = [f for f in obj.metadata.finalizers if f != finalizer]
    return await store.update(obj)


async def ensure_secret_protection(
    store: ObjectStore,
    namespace: str,
    name: str,
    finalizer: str = SECRET_PROTECTION_FINALIZER,
) -> Secret:
    """
    Protect the secret a managed resource authenticates with.

    Controllers of managed resources call this before they first use the
    secret, so it cannot disappear while they still need it for their own
    cleanup.

    Raises:
        NotFoundError: If the secret does not exist
        ConflictError: If the secret changed between read and write
    """
    secret = await store.get(Secret, namespace, name)
    if contains_finalizer(secret, finalizer):
        return secret

    secret = await add_finalizer(store, secret, finalizer)
    logger.info("secret_protection_added", namespace=namespace, secret=name)
    return secret
