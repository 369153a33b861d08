# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for secretgc tests.

Provides a temporary SQLite object store with the secret reference index
registered, test configuration, runtime state and object factories.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Generator, Sequence, Type

import pytest
import pytest_asyncio

from secretgc.config import SECRET_PROTECTION_FINALIZER

# Set test environment variables
os.environ["SECRETGC_ADMIN_API_KEY"] = "test-api-key-12345"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path):
    """Create a test configuration."""
    from secretgc.config import GCConfig

    return GCConfig(
        state_path=temp_dir / "state",
        requeue_after_seconds=10.0,
        max_conflict_retries=3,
    )


@pytest_asyncio.fixture
async def store(temp_dir: Path):
    """Create an initialized object store with secret reference indexes."""
    from secretgc.index import index_client_secret_ref_fields
    from secretgc.resources import REFERENCING_KINDS
    from secretgc.store import SQLiteObjectStore

    object_store = SQLiteObjectStore(temp_dir / "objects.db")
    await object_store.init()
    await index_client_secret_ref_fields(object_store, *REFERENCING_KINDS)
    return object_store


@pytest_asyncio.fixture
async def gc_state(test_config, store):
    """Create initialized collector state running against the test store."""
    from secretgc.core import initialize_gc_state

    state = await initialize_gc_state(test_config, store=store)
    yield state


@pytest.fixture
def make_secret(store):
    """
    Factory creating a secret, optionally with deletion already requested.

    Returns the secret as stored, or None if deletion removed it at once.
    """
    from secretgc.resources import ObjectMeta, Secret

    async def _make(
        namespace: str,
        name: str,
        finalizers: Sequence[str] = (SECRET_PROTECTION_FINALIZER,),
        deleting: bool = True,
    ):
        await store.create(
            Secret(
                metadata=ObjectMeta(name=name, namespace=namespace, finalizers=list(finalizers)),
                data={"token": "test-token"},
            )
        )
        if deleting:
            removed = await store.delete(Secret, namespace, name)
            if removed:
                return None
        return await store.get(Secret, namespace, name)

    return _make


@pytest.fixture
def make_resource(store):
    """Factory creating a managed resource that references a secret."""
    from secretgc.resources import ObjectMeta, SecretReference

    async def _make(
        kind: Type,
        namespace: str,
        name: str,
        secret_name: str,
        finalizers: Sequence[str] = (),
    ):
        return await store.create(
            kind(
                metadata=ObjectMeta(name=name, namespace=namespace, finalizers=list(finalizers)),
                auth_secret_ref=SecretReference(name=secret_name),
                spec={"project": "test-project"},
            )
        )

    return _make


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll an async predicate until it holds or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(interval)
    return await predicate()


@pytest.fixture
def eventually():
    """Expose wait_until() to tests."""
    return wait_until
