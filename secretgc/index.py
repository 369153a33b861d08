# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret Reference Index - Reverse lookup from a secret to its users.

Every managed resource kind gets a field index on the name of the secret
it authenticates with. The index itself is maintained by the object
store; this module only provides the extractor, registers it once per
kind, and builds the capped, namespace-scoped query used by the prober.
"""

from typing import List, Type

import structlog

from secretgc.config import SECRET_REF_INDEX_KEY
from secretgc.exceptions import IndexRegistrationError, StoreError
from secretgc.resources import HasSecretReference, Secret, StoredObject
from secretgc.store.base import ListOptions, ObjectStore

logger = structlog.get_logger()


def secret_ref_index_func(obj: StoredObject) -> List[str]:
    """
    Index the auth secret name of a managed resource.

    Objects without a secret reference (or with an empty one) are not
    indexed at all.

    Args:
        obj: Any stored object

    Returns:
        [secret_name], or [] if the object declares no secret reference
    """
    if not isinstance(obj, HasSecretReference):
        return []
    ref = obj.auth_secret_ref
    if ref is None or not ref.name:
        return []
    return [ref.name]


async def index_client_secret_ref_fields(
    store: ObjectStore,
    *kinds: Type[StoredObject],
    index_key: str = SECRET_REF_INDEX_KEY,
) -> None:
    """
    Register the secret reference index for each given kind.

    Must run once at startup, before the first reconcile.

    Raises:
        IndexRegistrationError: If the store rejects a registration
    """
    for kind in kinds:
        try:
            await store.register_index(kind, index_key, secret_ref_index_func)
        except StoreError as e:
            raise IndexRegistrationError(
                f"Unable to add index for secret ref fields of {kind.kind}: {e.message}",
                details={"kind": kind.kind, "index_key": index_key},
            ) from e

    logger.info(
        "secret_ref_indexes_registered",
        index_key=index_key,
        kinds=[kind.kind for kind in kinds],
    )


def instances_that_use_this_secret(
    secret: Secret,
    index_key: str = SECRET_REF_INDEX_KEY,
) -> ListOptions:
    """
    Build the listing that finds a user of this secret.

    Scoped to the secret's namespace and capped at one result, since only
    existence matters.
    """
    return ListOptions(
        namespace=secret.metadata.namespace,
        field_selector=(index_key, secret.metadata.name),
        limit=1,
    )
