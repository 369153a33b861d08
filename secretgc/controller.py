# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC Controller - Drives reconcile_secret() from store events.

Secret change events are turned into (namespace, name) keys on a work
queue. The queue guarantees that:
- a key waiting to be processed is queued only once
- a key is never processed by two workers at the same time; adds that
  arrive while it is being processed are replayed once it is done
- a "still needed" result comes back after its requeue delay
- a failed reconcile comes back with per-key exponential backoff

Workers never sleep on behalf of a secret: waiting is a timer on the
queue, so stopping the controller only has to wait for reconciles that
are already running.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Set, Tuple

import structlog

from secretgc.config import GCConfig
from secretgc.core import GCState, reconcile_secret
from secretgc.index import index_client_secret_ref_fields, secret_ref_index_func
from secretgc.resources import Secret
from secretgc.store.base import ListOptions, WatchEvent

logger = structlog.get_logger()

# (namespace, name) of a secret
Key = Tuple[str, str]

# Cap for the backoff exponent, keeps 2 ** n within float range
_MAX_BACKOFF_EXPONENT = 64


class WorkQueue:
    """
    Deduplicating, per-key serialized work queue with delayed adds.

    Args:
        backoff_base: Delay after the first failure of a key
        backoff_max: Upper bound for the failure delay
    """

    def __init__(self, backoff_base: float = 0.005, backoff_max: float = 1000.0) -> None:
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._queue: asyncio.Queue[Key | None] = asyncio.Queue()
        self._dirty: Set[Key] = set()
        self._processing: Set[Key] = set()
        self._failures: Dict[Key, int] = {}
        self._timers: Dict[Key, Tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Key) -> None:
        """Queue key for processing unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)

    def add_after(self, key: Key, delay: float) -> None:
        """
        Queue key once delay seconds have passed.

        If the key already has an earlier timer, that timer wins.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing[0] <= due:
                return
            existing[1].cancel()

        handle = loop.call_later(delay, self._fire, key)
        self._timers[key] = (due, handle)

    def _fire(self, key: Key) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def backoff_for(self, failures: int) -> float:
        """Delay before retrying a key that failed `failures` times before."""
        exponent = min(failures, _MAX_BACKOFF_EXPONENT)
        return min(self.backoff_base * (2**exponent), self.backoff_max)

    def add_rate_limited(self, key: Key) -> None:
        """Queue key after a delay that doubles with each failure."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        self.add_after(key, self.backoff_for(failures))

    def forget(self, key: Key) -> None:
        """Reset the failure count of key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: Key) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Key | None:
        """
        Wait for the next key and mark it as being processed.

        Returns:
            The key, or None once the queue is shutting down
        """
        key = await self._queue.get()
        if key is None or self._shutting_down:
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: Key) -> None:
        """Mark key as processed, replaying adds that came in meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shutdown(self, workers: int) -> None:
        """Stop handing out keys and wake up `workers` waiting consumers."""
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for _ in range(workers):
            self._queue.put_nowait(None)


async def _worker(config: GCConfig, state: GCState, queue: WorkQueue, worker_id: int) -> None:
    """Process keys until the queue shuts down."""
    while True:
        key = await queue.get()
        if key is None:
            logger.debug("secret_gc_worker_stopped", worker_id=worker_id)
            return

        namespace, name = key
        try:
            result = await reconcile_secret(config, state, namespace, name)
        except Exception as e:
            queue.add_rate_limited(key)
            logger.warning(
                "secret_reconcile_backing_off",
                namespace=namespace,
                secret=name,
                failures=queue.num_requeues(key),
                error=str(e),
            )
        else:
            queue.forget(key)
            if result.requeue_after is not None:
                queue.add_after(key, result.requeue_after)
        finally:
            queue.done(key)


async def start_controller(
    config: GCConfig,
    state: GCState,
) -> Callable[[], Awaitable[None]]:
    """
    Start reconciling secrets and return a stop function.

    Subscribes to secret events (and, when enabled, to deletions of
    managed resources, which wake up the secret they referenced), queues
    every existing secret once, and starts the workers.

    Args:
        config: Collector configuration
        state: Runtime state from initialize_gc_state()

    Returns:
        Async function that stops the controller
    """
    store = state["store"]
    queue = WorkQueue(config.error_backoff_base_seconds, config.error_backoff_max_seconds)

    async def on_secret_event(event: WatchEvent) -> None:
        queue.add(event.obj.key)

    async def on_reference_event(event: WatchEvent) -> None:
        if event.type != "deleted":
            return
        for secret_name in secret_ref_index_func(event.obj):
            queue.add((event.obj.metadata.namespace, secret_name))

    unsubscribes: List[Callable[[], None]] = [store.subscribe(Secret, on_secret_event)]
    if config.enqueue_on_reference_delete:
        for kind in state["kinds"]:
            unsubscribes.append(store.subscribe(kind, on_reference_event))

    # Initial sync: every secret gets one trigger
    try:
        for secret in await store.list(Secret, ListOptions()):
            queue.add(secret.key)
    except Exception:
        for unsubscribe in unsubscribes:
            unsubscribe()
        raise

    tasks = [
        asyncio.create_task(
            _worker(config, state, queue, worker_id),
            name=f"secretgc-worker-{worker_id}",
        )
        for worker_id in range(config.max_concurrent_reconciles)
    ]

    logger.info(
        "secret_gc_controller_started",
        workers=len(tasks),
        initial_secrets=len(queue),
        kinds=[kind.kind for kind in state["kinds"]],
    )

    async def stop() -> None:
        state["controller_enqueue"] = None
        for unsubscribe in unsubscribes:
            unsubscribe()
        queue.shutdown(len(tasks))
        await asyncio.gather(*tasks)
        logger.info("secret_gc_controller_stopped")

    state["controller_stop"] = stop
    state["controller_enqueue"] = queue.add
    return stop


async def setup_secret_gc(
    config: GCConfig,
    state: GCState,
) -> Callable[[], Awaitable[None]]:
    """
    Register the secret reference index for every managed kind and start
    the controller.

    Returns:
        Async function that stops the controller
    """
    await index_client_secret_ref_fields(
        state["store"],
        *state["kinds"],
        index_key=config.secret_ref_index_key,
    )
    return await start_controller(config, state)
