# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC Core - Reconciler deciding when a secret's protection may go.

Secrets used by managed resources carry a protection finalizer, so a
deletion request only sets their deletion timestamp. The managed
resources may still need the secret to authenticate their own remote
deletion. Each reconcile of such a secret:

1. Reads the secret. Gone, not being deleted, or already released:
   nothing to do.
2. Asks every managed kind, in a fixed order, whether an object in the
   secret's namespace still references it, stopping at the first hit.
3. Still referenced: asks to be called again after a fixed delay.
4. Unreferenced: removes exactly its own finalizer with a conditional
   update, leaving every other finalizer in place.

Nothing is carried between triggers; every call recomputes its decision
from the stored secret, so duplicate or missed triggers are harmless.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Tuple, Type, TypedDict

import structlog
from ulid import ULID

from secretgc.config import GCConfig
from secretgc.exceptions import AuditError, ConflictError, NotFoundError
from secretgc.finalizers import contains_finalizer, marked_for_deletion, remove_finalizer
from secretgc.prober import is_still_needed
from secretgc.resources import REFERENCING_KINDS, ManagedResource, Secret
from secretgc.store.base import ObjectStore

logger = structlog.get_logger()


class Outcome(str, Enum):
    """What a single reconcile decided."""

    IGNORED = "ignored"  # Nothing to do for this secret
    NEEDS_WAIT = "needs_wait"  # Still referenced, check again later
    RELEASED = "released"  # Protection finalizer removed


@dataclass(frozen=True)
class ReconcileResult:
    """
    Result of reconciling one secret.

    ``requeue_after`` is set only for NEEDS_WAIT; failures are raised as
    SecretGCError instead of being returned.
    """

    outcome: Outcome
    operation_id: str  # ULID
    requeue_after: float | None = None
    blocking_kind: str | None = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


@dataclass
class GCMetrics:
    """Metrics for reconcile operations."""

    total_reconciles: int
    total_released: int
    total_requeued: int
    total_ignored: int
    total_errors: int
    total_conflicts: int
    waiting_secrets: int
    last_reconcile_at: datetime | None
    last_release_at: datetime | None
    last_error: str | None


class WaitingSecret(TypedDict):
    """Reporting entry for a secret that is still referenced."""

    blocking_kind: str
    since: datetime
    checks: int


class GCState(TypedDict):
    """Runtime state for the collector."""

    store: ObjectStore
    kinds: Tuple[Type[ManagedResource], ...]
    audit_db_path: Path | None
    controller_stop: Any  # Async stop function of a running controller
    controller_enqueue: Any  # Queues a (namespace, name) key on the running controller
    waiting: Dict[Tuple[str, str], WaitingSecret]
    total_reconciles: int
    total_released: int
    total_requeued: int
    total_ignored: int
    total_errors: int
    total_conflicts: int
    last_reconcile_at: datetime | None
    last_release_at: datetime | None
    last_error: str | None


async def initialize_gc_state(
    config: GCConfig,
    store: ObjectStore | None = None,
    kinds: Tuple[Type[ManagedResource], ...] = REFERENCING_KINDS,
) -> GCState:
    """
    Initialize runtime state for the collector.

    Without an explicit store, an embedded SQLite store is created under
    config.state_path.

    Args:
        config: Collector configuration
        store: Object store to run against (optional)
        kinds: Managed kinds to consult, in check order

    Returns:
        Initialized GCState dictionary
    """
    from secretgc.audit import init_audit_db
    from secretgc.store.sqlite_store import SQLiteObjectStore

    config.state_path.mkdir(parents=True, exist_ok=True)

    if store is None:
        sqlite_store = SQLiteObjectStore(config.state_path / "objects.db")
        await sqlite_store.init()
        store = sqlite_store

    audit_db_path = None
    if config.audit_enabled:
        audit_db_path = config.state_path / "audit.db"
        await init_audit_db(audit_db_path)

    return GCState(
        store=store,
        kinds=tuple(kinds),
        audit_db_path=audit_db_path,
        controller_stop=None,
        controller_enqueue=None,
        waiting={},
        total_reconciles=0,
        total_released=0,
        total_requeued=0,
        total_ignored=0,
        total_errors=0,
        total_conflicts=0,
        last_reconcile_at=None,
        last_release_at=None,
        last_error=None,
    )


async def reconcile_secret(
    config: GCConfig,
    state: GCState,
    namespace: str,
    name: str,
) -> ReconcileResult:
    """
    Reconcile the protection finalizer of one secret.

    A resource version conflict while releasing restarts the whole
    decision from a fresh read, up to config.max_conflict_retries times.

    Args:
        config: Collector configuration
        state: Runtime state
        namespace: Secret namespace
        name: Secret name

    Returns:
        ReconcileResult; requeue_after is set while the secret is in use

    Raises:
        ReferenceCheckError: If a managed kind could not be checked
        ConflictError: If every attempt lost against a concurrent writer
        StoreError: On other store failures
    """
    operation_id = str(ULID())
    log = logger.bind(operation_id=operation_id, namespace=namespace, secret=name)

    state["total_reconciles"] += 1
    state["last_reconcile_at"] = datetime.now(UTC)

    attempt = 0
    try:
        while True:
            try:
                result = await _reconcile_once(config, state, namespace, name, operation_id, log)
                break
            except ConflictError:
                attempt += 1
                state["total_conflicts"] += 1
                if attempt > config.max_conflict_retries:
                    raise
                log.warning("secret_update_conflict_retrying", attempt=attempt)
    except Exception as e:
        # Third-party stores may raise outside the SecretGCError hierarchy
        state["total_errors"] += 1
        state["last_error"] = str(e)
        log.error("secret_reconcile_failed", error=str(e))
        raise

    _account(state, (namespace, name), result)
    return result


async def _reconcile_once(
    config: GCConfig,
    state: GCState,
    namespace: str,
    name: str,
    operation_id: str,
    log: Any,
) -> ReconcileResult:
    store = state["store"]

    try:
        secret = await store.get(Secret, namespace, name)
    except NotFoundError:
        log.debug("secret_not_found")
        return ReconcileResult(outcome=Outcome.IGNORED, operation_id=operation_id)

    # Only secrets that are being deleted and still carry our finalizer
    if not marked_for_deletion(secret) or not contains_finalizer(
        secret, config.protection_finalizer
    ):
        log.debug(
            "secret_ignored",
            marked_for_deletion=marked_for_deletion(secret),
            finalizers=secret.metadata.finalizers,
        )
        return ReconcileResult(outcome=Outcome.IGNORED, operation_id=operation_id)

    blocking_kind = await is_still_needed(
        store, secret, state["kinds"], config.secret_ref_index_key
    )
    if blocking_kind is not None:
        log.info(
            "secret_still_needed_requeueing",
            blocking_kind=blocking_kind.kind,
            requeue_after=config.requeue_after_seconds,
        )
        return ReconcileResult(
            outcome=Outcome.NEEDS_WAIT,
            operation_id=operation_id,
            requeue_after=config.requeue_after_seconds,
            blocking_kind=blocking_kind.kind,
        )

    log.info("removing_secret_protection_finalizer")
    deletion_requested_at = secret.metadata.deletion_timestamp

    try:
        released = await remove_finalizer(store, secret, config.protection_finalizer)
    except NotFoundError:
        log.debug("secret_deleted_concurrently")
        return ReconcileResult(outcome=Outcome.IGNORED, operation_id=operation_id)

    # Finalizer already removed: audit failures are logged, not raised
    if state["audit_db_path"] is not None:
        try:
            await _record_release(
                state["audit_db_path"],
                operation_id,
                namespace,
                name,
                config.protection_finalizer,
                released.metadata.finalizers,
                deletion_requested_at,
            )
        except AuditError as e:
            log.error("audit_record_failed", error=str(e))

    log.info("secret_protection_released", remaining_finalizers=released.metadata.finalizers)
    return ReconcileResult(outcome=Outcome.RELEASED, operation_id=operation_id)


async def _record_release(
    audit_db_path: Path,
    operation_id: str,
    namespace: str,
    name: str,
    finalizer: str,
    remaining: list,
    deletion_requested_at: datetime | None,
) -> None:
    import aiosqlite

    from secretgc.audit import record_release

    try:
        async with aiosqlite.connect(audit_db_path) as db:
            await record_release(
                db,
                operation_id,
                namespace,
                name,
                finalizer,
                remaining,
                deletion_requested_at,
            )
    except aiosqlite.Error as e:
        raise AuditError(
            f"Failed to record release of {namespace}/{name}: {e}",
            details={"operation_id": operation_id},
        ) from e


def _account(state: GCState, key: Tuple[str, str], result: ReconcileResult) -> None:
    """Update counters and the waiting report; never read by decisions."""
    if result.outcome == Outcome.NEEDS_WAIT:
        state["total_requeued"] += 1
        previous = state["waiting"].get(key)
        state["waiting"][key] = WaitingSecret(
            blocking_kind=result.blocking_kind or "",
            since=previous["since"] if previous else datetime.now(UTC),
            checks=previous["checks"] + 1 if previous else 1,
        )
        return

    state["waiting"].pop(key, None)
    if result.outcome == Outcome.RELEASED:
        state["total_released"] += 1
        state["last_release_at"] = datetime.now(UTC)
    else:
        state["total_ignored"] += 1


async def get_metrics(config: GCConfig, state: GCState) -> GCMetrics:
    """Get current collector metrics."""
    return GCMetrics(
        total_reconciles=state["total_reconciles"],
        total_released=state["total_released"],
        total_requeued=state["total_requeued"],
        total_ignored=state["total_ignored"],
        total_errors=state["total_errors"],
        total_conflicts=state["total_conflicts"],
        waiting_secrets=len(state["waiting"]),
        last_reconcile_at=state["last_reconcile_at"],
        last_release_at=state["last_release_at"],
        last_error=state["last_error"],
    )


async def shutdown_gc_state(state: GCState) -> None:
    """Stop a running controller and release resources."""
    if state["controller_stop"]:
        try:
            await state["controller_stop"]()
        except Exception as e:
            logger.warning("controller_stop_failed", error=str(e))
        state["controller_stop"] = None
        state["controller_enqueue"] = None

    logger.info("gc_state_shutdown_complete")
