# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Safety Tests for secretgc.

These tests verify the core guarantees:
1. Hands off - secrets not being deleted, or not ours, are never touched
2. No early release - a referenced secret ALWAYS keeps its finalizer
3. Precise release - ONLY our finalizer is removed, others stay
4. Idempotence - repeated triggers converge on the same state
5. Namespace isolation - references in other namespaces never count
6. Fail closed - errors and conflicts never lead to a partial release
"""

from pathlib import Path

import aiosqlite
import pytest

from secretgc.config import SECRET_PROTECTION_FINALIZER
from secretgc.core import Outcome, reconcile_secret
from secretgc.exceptions import ConflictError, NotFoundError, ReferenceCheckError, StoreError
from secretgc.finalizers import remove_finalizer
from secretgc.resources import (
    REFERENCING_KINDS,
    ConnectionPool,
    Database,
    Kafka,
    Secret,
)


OTHER_FINALIZER = "example.com/backup-hold"


class FlakyStore:
    """Store wrapper injecting list failures and update conflicts."""

    def __init__(self, inner, fail_list_kinds=(), update_conflicts=0):
        self._inner = inner
        self.fail_list_kinds = set(fail_list_kinds)
        self.update_conflicts = update_conflicts
        self.update_calls = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def list(self, kind, options):
        if kind.kind in self.fail_list_kinds:
            raise StoreError("backend unavailable", details={"kind": kind.kind})
        return await self._inner.list(kind, options)

    async def update(self, obj):
        self.update_calls += 1
        if self.update_conflicts > 0:
            self.update_conflicts -= 1
            raise ConflictError("simulated conflict")
        return await self._inner.update(obj)


class RacingStore(FlakyStore):
    """Lets a concurrent writer add a finalizer right before our first write."""

    def __init__(self, inner, late_finalizer):
        super().__init__(inner)
        self.late_finalizer = late_finalizer

    async def update(self, obj):
        self.update_calls += 1
        if self.update_calls == 1:
            fresh = await self._inner.get(type(obj), *obj.key)
            fresh.metadata.finalizers.append(self.late_finalizer)
            await self._inner.update(fresh)
        return await self._inner.update(obj)


class VanishingStore(FlakyStore):
    """Somebody else finishes the deletion between our read and our write."""

    async def update(self, obj):
        self.update_calls += 1
        raise NotFoundError("gone", details={"name": obj.metadata.name})


class CrashingStore(FlakyStore):
    """Store raising errors outside the secretgc exception hierarchy."""

    async def get(self, kind, namespace, name):
        raise RuntimeError("driver crashed")


# ============================================================================
# Test 1: HANDS OFF
# ============================================================================

@pytest.mark.asyncio
async def test_secret_not_marked_for_deletion_is_left_alone(
    test_config, gc_state, store, make_secret
):
    """A secret nobody asked to delete keeps its finalizer and is not requeued."""
    before = await make_secret("ns1", "db-creds", deleting=False)

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.IGNORED
    assert result.requeue_after is None
    after = await store.get(Secret, "ns1", "db-creds")
    assert after.metadata.finalizers == [SECRET_PROTECTION_FINALIZER]
    assert after.metadata.resource_version == before.metadata.resource_version


@pytest.mark.asyncio
async def test_deleting_secret_without_our_finalizer_is_left_alone(
    test_config, gc_state, store, make_secret
):
    """Deletion pending but our finalizer is gone: not our concern."""
    before = await make_secret("ns1", "db-creds", finalizers=[OTHER_FINALIZER])

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.IGNORED
    assert not result.requeue
    after = await store.get(Secret, "ns1", "db-creds")
    assert after.metadata.finalizers == [OTHER_FINALIZER]
    assert after.metadata.resource_version == before.metadata.resource_version


@pytest.mark.asyncio
async def test_missing_secret_is_not_an_error(test_config, gc_state):
    """A secret that is already gone means the race was won elsewhere."""
    result = await reconcile_secret(test_config, gc_state, "ns1", "never-existed")

    assert result.outcome == Outcome.IGNORED
    assert result.requeue_after is None
    assert gc_state["total_errors"] == 0


# ============================================================================
# Test 2: NO EARLY RELEASE
# ============================================================================

@pytest.mark.asyncio
async def test_referenced_secret_keeps_finalizer_and_requeues(
    test_config, gc_state, store, make_secret, make_resource
):
    """
    CRITICAL: While a managed resource references the secret, the
    finalizer must stay and a delayed re-check must be requested.
    """
    await make_secret("ns1", "db-creds")
    await make_resource(Database, "ns1", "orders", "db-creds")

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.NEEDS_WAIT
    assert result.requeue_after == test_config.requeue_after_seconds
    assert result.blocking_kind == "Database"

    secret = await store.get(Secret, "ns1", "db-creds")
    assert SECRET_PROTECTION_FINALIZER in secret.metadata.finalizers
    assert secret.metadata.deletion_timestamp is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", REFERENCING_KINDS, ids=lambda k: k.kind)
async def test_every_managed_kind_blocks_release(
    kind, test_config, gc_state, store, make_secret, make_resource
):
    """Each of the managed kinds on its own is enough to hold the secret."""
    await make_secret("ns1", "shared-token")
    await make_resource(kind, "ns1", "user-of-token", "shared-token")

    result = await reconcile_secret(test_config, gc_state, "ns1", "shared-token")

    assert result.outcome == Outcome.NEEDS_WAIT
    assert result.blocking_kind == kind.kind
    secret = await store.get(Secret, "ns1", "shared-token")
    assert SECRET_PROTECTION_FINALIZER in secret.metadata.finalizers


@pytest.mark.asyncio
async def test_first_kind_in_check_order_is_reported(
    test_config, gc_state, make_secret, make_resource
):
    """With several users, the first kind in the fixed order is reported."""
    await make_secret("ns1", "shared-token")
    await make_resource(ConnectionPool, "ns1", "pool", "shared-token")
    await make_resource(Kafka, "ns1", "events", "shared-token")

    result = await reconcile_secret(test_config, gc_state, "ns1", "shared-token")

    assert result.blocking_kind == "Kafka"


@pytest.mark.asyncio
async def test_resource_mid_deletion_still_holds_secret(
    test_config, gc_state, store, make_secret, make_resource
):
    """
    A managed resource that is itself being deleted still needs the
    secret until its own finalizer is gone.
    """
    await make_secret("ns1", "db-creds")
    await make_resource(
        Database, "ns1", "orders", "db-creds", finalizers=["example.com/remote-delete"]
    )
    assert await store.delete(Database, "ns1", "orders") is False

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")
    assert result.outcome == Outcome.NEEDS_WAIT

    database = await store.get(Database, "ns1", "orders")
    await remove_finalizer(store, database, "example.com/remote-delete")

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")
    assert result.outcome == Outcome.RELEASED


# ============================================================================
# Test 3: PRECISE RELEASE
# ============================================================================

@pytest.mark.asyncio
async def test_release_removes_only_our_finalizer(
    test_config, gc_state, store, make_secret
):
    """Other holders' finalizers survive the release untouched."""
    await make_secret(
        "ns1",
        "db-creds",
        finalizers=[OTHER_FINALIZER, SECRET_PROTECTION_FINALIZER, "example.com/z"],
    )

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.RELEASED
    assert result.requeue_after is None
    secret = await store.get(Secret, "ns1", "db-creds")
    assert secret.metadata.finalizers == [OTHER_FINALIZER, "example.com/z"]
    assert secret.metadata.deletion_timestamp is not None


@pytest.mark.asyncio
async def test_custom_finalizer_name_is_respected(gc_state, store, make_secret, test_config):
    """The collector only ever owns the finalizer it is configured with."""
    config = test_config.with_updates(protection_finalizer="example.com/secret-protection")
    await make_secret("ns1", "db-creds", finalizers=[SECRET_PROTECTION_FINALIZER])

    result = await reconcile_secret(config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.IGNORED
    secret = await store.get(Secret, "ns1", "db-creds")
    assert secret.metadata.finalizers == [SECRET_PROTECTION_FINALIZER]


# ============================================================================
# Test 4: IDEMPOTENCE
# ============================================================================

@pytest.mark.asyncio
async def test_reconciling_released_secret_again_is_a_no_op(
    test_config, gc_state, store, make_secret
):
    """Two triggers in a row end in the same state, without errors."""
    await make_secret("ns1", "db-creds", finalizers=[SECRET_PROTECTION_FINALIZER, OTHER_FINALIZER])

    first = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")
    after_first = await store.get(Secret, "ns1", "db-creds")

    second = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")
    after_second = await store.get(Secret, "ns1", "db-creds")

    assert first.outcome == Outcome.RELEASED
    assert second.outcome == Outcome.IGNORED
    assert after_second.metadata.finalizers == [OTHER_FINALIZER]
    assert after_second.metadata.resource_version == after_first.metadata.resource_version
    assert gc_state["total_errors"] == 0


@pytest.mark.asyncio
async def test_remove_finalizer_twice_writes_once(store, make_secret):
    """Removing an absent finalizer does not touch the store."""
    secret = await make_secret("ns1", "db-creds", finalizers=[SECRET_PROTECTION_FINALIZER, OTHER_FINALIZER])

    released = await remove_finalizer(store, secret, SECRET_PROTECTION_FINALIZER)
    again = await remove_finalizer(store, released, SECRET_PROTECTION_FINALIZER)

    assert again.metadata.resource_version == released.metadata.resource_version
    assert again.metadata.finalizers == [OTHER_FINALIZER]


# ============================================================================
# Test 5: NAMESPACE ISOLATION
# ============================================================================

@pytest.mark.asyncio
async def test_reference_in_other_namespace_does_not_block(
    test_config, gc_state, store, make_secret, make_resource
):
    """A same-named reference in namespace B never holds the secret in A."""
    await make_secret("ns1", "db-creds")
    await make_resource(Database, "ns2", "orders", "db-creds")

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.RELEASED
    with pytest.raises(NotFoundError):
        await store.get(Secret, "ns1", "db-creds")
    # The other namespace's resource is untouched
    assert (await store.get(Database, "ns2", "orders")).auth_secret_ref.name == "db-creds"


# ============================================================================
# Test 6: END-TO-END SCENARIOS
# ============================================================================

@pytest.mark.asyncio
async def test_secret_released_after_its_database_is_gone(
    test_config, gc_state, store, make_secret, make_resource
):
    """
    db-creds in ns1, protected and being deleted, used by one Database:
    first reconcile waits, after the Database is deleted the next one
    releases and the store removes the secret.
    """
    await make_secret("ns1", "db-creds")
    await make_resource(Database, "ns1", "orders", "db-creds")

    waiting = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")
    assert waiting.outcome == Outcome.NEEDS_WAIT
    secret = await store.get(Secret, "ns1", "db-creds")
    assert secret.metadata.finalizers == [SECRET_PROTECTION_FINALIZER]

    assert await store.delete(Database, "ns1", "orders") is True

    released = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")
    assert released.outcome == Outcome.RELEASED
    with pytest.raises(NotFoundError):
        await store.get(Secret, "ns1", "db-creds")

    assert gc_state["total_requeued"] == 1
    assert gc_state["total_released"] == 1
    assert gc_state["waiting"] == {}


@pytest.mark.asyncio
async def test_unused_secret_released_in_single_reconcile(
    test_config, gc_state, store, make_secret
):
    """No users across all managed kinds: one call releases, no requeue."""
    await make_secret("ns1", "db-creds")

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.RELEASED
    assert result.requeue_after is None
    assert len(gc_state["kinds"]) == 11
    with pytest.raises(NotFoundError):
        await store.get(Secret, "ns1", "db-creds")


# ============================================================================
# Test 7: FAIL CLOSED
# ============================================================================

@pytest.mark.asyncio
async def test_unserved_kind_counts_as_unreferenced(test_config, temp_dir: Path):
    """A kind missing from the store is the same as a kind without users."""
    from secretgc.core import initialize_gc_state
    from secretgc.index import index_client_secret_ref_fields
    from secretgc.resources import ObjectMeta
    from secretgc.store import SQLiteObjectStore

    served = [Secret] + [k for k in REFERENCING_KINDS if k is not ConnectionPool]
    store = SQLiteObjectStore(temp_dir / "partial.db", served_kinds=served)
    await store.init()
    await index_client_secret_ref_fields(store, *REFERENCING_KINDS)
    state = await initialize_gc_state(test_config, store=store)

    await store.create(
        Secret(metadata=ObjectMeta(name="db-creds", namespace="ns1",
                                   finalizers=[SECRET_PROTECTION_FINALIZER]))
    )
    await store.delete(Secret, "ns1", "db-creds")

    result = await reconcile_secret(test_config, state, "ns1", "db-creds")

    assert result.outcome == Outcome.RELEASED
    assert state["total_errors"] == 0


@pytest.mark.asyncio
async def test_backend_error_aborts_without_release(
    test_config, gc_state, store, make_secret
):
    """
    CRITICAL: If any kind cannot be checked, nothing is released and the
    failure is raised for the scheduler to retry.
    """
    await make_secret("ns1", "db-creds")
    gc_state["store"] = FlakyStore(store, fail_list_kinds={"Database"})

    with pytest.raises(ReferenceCheckError) as exc_info:
        await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert isinstance(exc_info.value.__cause__, StoreError)
    assert exc_info.value.details["kind"] == "Database"
    secret = await store.get(Secret, "ns1", "db-creds")
    assert secret.metadata.finalizers == [SECRET_PROTECTION_FINALIZER]
    assert gc_state["store"].update_calls == 0
    assert gc_state["total_errors"] == 1
    assert gc_state["last_error"] is not None


@pytest.mark.asyncio
async def test_conflict_restarts_from_fresh_read(
    test_config, gc_state, store, make_secret
):
    """
    A concurrent finalizer change makes our write conflict; the retry
    starts over from a fresh read and keeps the other writer's change.
    """
    await make_secret("ns1", "db-creds")
    racing = RacingStore(store, late_finalizer=OTHER_FINALIZER)
    gc_state["store"] = racing

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.RELEASED
    assert gc_state["total_conflicts"] == 1
    secret = await store.get(Secret, "ns1", "db-creds")
    assert secret.metadata.finalizers == [OTHER_FINALIZER]


@pytest.mark.asyncio
async def test_secret_gone_before_release_write_is_ignored(
    test_config, gc_state, store, make_secret
):
    """Losing the race to the final removal is not an error."""
    await make_secret("ns1", "db-creds")
    vanishing = VanishingStore(store)
    gc_state["store"] = vanishing

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.IGNORED
    assert result.requeue_after is None
    assert vanishing.update_calls == 1
    assert gc_state["total_errors"] == 0
    assert gc_state["total_released"] == 0


@pytest.mark.asyncio
async def test_foreign_store_errors_are_counted(test_config, gc_state, store):
    """Failures outside the secretgc hierarchy still show up in the metrics."""
    gc_state["store"] = CrashingStore(store)

    with pytest.raises(RuntimeError):
        await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert gc_state["total_errors"] == 1
    assert gc_state["last_error"] == "driver crashed"


@pytest.mark.asyncio
async def test_persistent_conflicts_are_raised(test_config, gc_state, store, make_secret):
    """When every attempt conflicts, the conflict surfaces for backoff."""
    config = test_config.with_updates(max_conflict_retries=2)
    await make_secret("ns1", "db-creds")
    flaky = FlakyStore(store, update_conflicts=100)
    gc_state["store"] = flaky

    with pytest.raises(ConflictError):
        await reconcile_secret(config, gc_state, "ns1", "db-creds")

    assert flaky.update_calls == 3
    secret = await store.get(Secret, "ns1", "db-creds")
    assert secret.metadata.finalizers == [SECRET_PROTECTION_FINALIZER]


# ============================================================================
# Test 8: AUDIT TRAIL
# ============================================================================

@pytest.mark.asyncio
async def test_release_is_recorded_in_audit_trail(
    test_config, gc_state, make_secret
):
    """Every release leaves an audit record tied to its reconcile."""
    from secretgc.audit import get_release_record

    await make_secret("ns1", "db-creds", finalizers=[SECRET_PROTECTION_FINALIZER, OTHER_FINALIZER])

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    async with aiosqlite.connect(gc_state["audit_db_path"]) as db:
        record = await get_release_record(db, "ns1", "db-creds")

    assert record is not None
    assert record["operation_id"] == result.operation_id
    assert record["finalizer"] == SECRET_PROTECTION_FINALIZER
    assert record["remaining_finalizers"] == [OTHER_FINALIZER]
    assert record["deletion_requested_at"] is not None


@pytest.mark.asyncio
async def test_audit_failure_still_reports_release(
    test_config, gc_state, store, make_secret, temp_dir: Path
):
    """
    CRITICAL: Once the finalizer is removed the release stands, even if
    the audit trail cannot be written.
    """
    # A directory in place of the audit database cannot be opened
    broken_audit = temp_dir / "audit-is-a-directory"
    broken_audit.mkdir()
    gc_state["audit_db_path"] = broken_audit
    await make_secret("ns1", "db-creds")

    result = await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    assert result.outcome == Outcome.RELEASED
    assert result.requeue_after is None
    with pytest.raises(NotFoundError):
        await store.get(Secret, "ns1", "db-creds")
    assert gc_state["total_released"] == 1
    assert gc_state["total_errors"] == 0
    assert gc_state["last_release_at"] is not None


@pytest.mark.asyncio
async def test_waiting_report_tracks_checks(
    test_config, gc_state, make_secret, make_resource
):
    """The waiting report counts checks and keeps the first-seen time."""
    await make_secret("ns1", "db-creds")
    await make_resource(Database, "ns1", "orders", "db-creds")

    await reconcile_secret(test_config, gc_state, "ns1", "db-creds")
    first_since = gc_state["waiting"][("ns1", "db-creds")]["since"]
    await reconcile_secret(test_config, gc_state, "ns1", "db-creds")

    entry = gc_state["waiting"][("ns1", "db-creds")]
    assert entry["checks"] == 2
    assert entry["since"] == first_since
    assert entry["blocking_kind"] == "Database"
