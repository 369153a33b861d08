# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Existence Prober - Is a secret still needed by any managed resource?
"""

from typing import Iterable, Type

import structlog

from secretgc.config import SECRET_REF_INDEX_KEY
from secretgc.exceptions import NotFoundError, ReferenceCheckError, StoreError
from secretgc.index import instances_that_use_this_secret
from secretgc.resources import ManagedResource, Secret
from secretgc.store.base import ObjectStore

logger = structlog.get_logger()


async def still_needed_by(
    store: ObjectStore,
    secret: Secret,
    kind: Type[ManagedResource],
    index_key: str = SECRET_REF_INDEX_KEY,
) -> bool:
    """
    Check whether any object of one kind still uses the secret.

    A kind the store does not know is treated as having no users.

    Args:
        store: Object store to query
        secret: The secret being deleted
        kind: Managed resource kind to look at

    Returns:
        True if at least one object of this kind in the secret's
        namespace references the secret

    Raises:
        StoreError: On any failure other than NotFoundError
    """
    try:
        users = await store.list(kind, instances_that_use_this_secret(secret, index_key))
    except NotFoundError:
        return False
    return len(users) > 0


async def is_still_needed(
    store: ObjectStore,
    secret: Secret,
    kinds: Iterable[Type[ManagedResource]],
    index_key: str = SECRET_REF_INDEX_KEY,
) -> Type[ManagedResource] | None:
    """
    Check all managed kinds, stopping at the first one that uses the secret.

    Returns:
        The first kind (in iteration order) still using the secret, or
        None if no kind does

    Raises:
        ReferenceCheckError: If any kind could not be checked
    """
    for kind in kinds:
        try:
            needed = await still_needed_by(store, secret, kind, index_key)
        except StoreError as e:
            raise ReferenceCheckError(
                "Unable to decide if secret is still used by some managed resource",
                details={
                    "kind": kind.kind,
                    "namespace": secret.metadata.namespace,
                    "secret": secret.metadata.name,
                    "error": e.message,
                },
            ) from e
        if needed:
            logger.debug(
                "secret_reference_found",
                kind=kind.kind,
                namespace=secret.metadata.namespace,
                secret=secret.metadata.name,
            )
            return kind
    return None
