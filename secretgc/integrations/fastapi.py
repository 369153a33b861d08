# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC FastAPI Integration - Plugin for FastAPI applications.

This module provides:
- Lifespan management (index registration, controller start/stop)
- Protected admin endpoints (manual reconcile, status, metrics, audit)
- Health checks
"""

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, UTC

import aiosqlite
import structlog
from fastapi import Depends, FastAPI, HTTPException, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from secretgc.audit import get_audit_stats, list_releases
from secretgc.config import GCConfig
from secretgc.controller import setup_secret_gc
from secretgc.core import (
    GCState,
    get_metrics,
    initialize_gc_state,
    reconcile_secret,
    shutdown_gc_state,
)
from secretgc.exceptions import SecretGCError
from secretgc.resources import Secret
from secretgc.store.base import ListOptions, ObjectStore

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the SECRETGC_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("SECRETGC_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="SECRETGC_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def register_secretgc_routes(
    app: FastAPI,
    config: GCConfig,
    state: GCState,
    prefix: str = "/admin/secretgc",
) -> None:
    """
    Register secret GC admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: Collector configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/secretgc)
    """

    @app.post(
        f"{prefix}/reconcile/{{namespace}}/{{name}}",
        dependencies=[Depends(verify_api_key)],
    )
    async def trigger_reconcile(namespace: str, name: str, response: Response) -> dict:
        """
        Trigger a reconcile of one secret.

        With a running controller the key goes onto its work queue, so the
        secret is never reconciled by two callers at once (202, queued).
        Without one, the secret is reconciled right here and the outcome
        is returned.
        """
        enqueue = state["controller_enqueue"]
        if enqueue is not None:
            enqueue((namespace, name))
            response.status_code = 202
            return {"queued": True, "namespace": namespace, "secret": name}

        try:
            result = await reconcile_secret(config, state, namespace, name)
        except SecretGCError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return {
            "queued": False,
            "operation_id": result.operation_id,
            "outcome": result.outcome.value,
            "requeue_after": result.requeue_after,
            "blocking_kind": result.blocking_kind,
        }

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_status() -> dict:
        """
        Get current collector status.
        """
        return {
            "controller_running": state["controller_stop"] is not None,
            "last_reconcile_at": _isoformat(state["last_reconcile_at"]),
            "total_reconciles": state["total_reconciles"],
            "total_released": state["total_released"],
            "waiting_secrets": len(state["waiting"]),
            "protection_finalizer": config.protection_finalizer,
        }

    @app.get(f"{prefix}/metrics", dependencies=[Depends(verify_api_key)])
    async def get_gc_metrics() -> dict:
        """
        Get detailed reconcile metrics.
        """
        metrics = await get_metrics(config, state)
        data = asdict(metrics)
        data["last_reconcile_at"] = _isoformat(metrics.last_reconcile_at)
        data["last_release_at"] = _isoformat(metrics.last_release_at)
        return data

    @app.get(f"{prefix}/waiting", dependencies=[Depends(verify_api_key)])
    async def list_waiting() -> list:
        """
        List secrets whose deletion is waiting for a managed resource.
        """
        return [
            {
                "namespace": namespace,
                "secret": name,
                "blocking_kind": entry["blocking_kind"],
                "since": entry["since"].isoformat(),
                "checks": entry["checks"],
            }
            for (namespace, name), entry in sorted(state["waiting"].items())
        ]

    @app.get(f"{prefix}/releases", dependencies=[Depends(verify_api_key)])
    async def list_gc_releases(
        limit: int = 50,
        offset: int = 0,
        namespace: str | None = None,
    ) -> list:
        """
        List finalizer releases with pagination.

        Args:
            limit: Maximum number of releases to return
            offset: Number of releases to skip
            namespace: Filter by namespace
        """
        if state["audit_db_path"] is None:
            raise HTTPException(status_code=404, detail="Audit trail is disabled")
        async with aiosqlite.connect(state["audit_db_path"]) as audit_db:
            return await list_releases(audit_db, limit, offset, namespace)

    @app.get(f"{prefix}/audit-stats", dependencies=[Depends(verify_api_key)])
    async def get_audit_statistics() -> dict:
        """
        Get audit trail statistics.
        """
        if state["audit_db_path"] is None:
            raise HTTPException(status_code=404, detail="Audit trail is disabled")
        async with aiosqlite.connect(state["audit_db_path"]) as audit_db:
            return await get_audit_stats(audit_db)

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the object store answers and the controller is running.
        """
        store_ok = False
        store_error = None
        try:
            await state["store"].list(Secret, ListOptions(limit=1))
            store_ok = True
        except SecretGCError as e:
            store_error = str(e)

        controller_ok = state["controller_stop"] is not None

        status = "healthy"
        if not store_ok or not controller_ok:
            status = "degraded"
        if not store_ok and not controller_ok:
            status = "unhealthy"

        return {
            "status": status,
            "store_reachable": store_ok,
            "store_error": store_error,
            "controller_running": controller_ok,
            "audit_enabled": state["audit_db_path"] is not None,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration.
        """
        return {
            "protection_finalizer": config.protection_finalizer,
            "secret_ref_index_key": config.secret_ref_index_key,
            "requeue_after_seconds": config.requeue_after_seconds,
            "max_conflict_retries": config.max_conflict_retries,
            "max_concurrent_reconciles": config.max_concurrent_reconciles,
            "audit_enabled": config.audit_enabled,
            "enqueue_on_reference_delete": config.enqueue_on_reference_delete,
            "kinds": [kind.kind for kind in state["kinds"]],
        }


@asynccontextmanager
async def secretgc_lifespan(
    app: FastAPI,
    config: GCConfig,
    store: ObjectStore | None = None,
    prefix: str = "/admin/secretgc",
):
    """
    Lifespan context manager running the collector with the app.

    Usage:

        app = FastAPI(lifespan=lambda app: secretgc_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Collector configuration
        store: Object store to run against (default: embedded SQLite store)
        prefix: URL prefix for admin endpoints
    """
    logger.info("secretgc_lifespan_starting", finalizer=config.protection_finalizer)

    state = await initialize_gc_state(config, store=store)
    app.state.secretgc_state = state
    app.state.secretgc_config = config

    register_secretgc_routes(app, config, state, prefix)
    await setup_secret_gc(config, state)

    logger.info("secretgc_lifespan_started")

    try:
        yield
    finally:
        logger.info("secretgc_lifespan_stopping")
        await shutdown_gc_state(state)
        logger.info("secretgc_lifespan_stopped")


def setup_secretgc_plugin(
    app: FastAPI,
    config: GCConfig,
    store: ObjectStore | None = None,
    prefix: str = "/admin/secretgc",
) -> None:
    """
    Set up the secret GC plugin on an existing FastAPI app.

    Wraps the app's current lifespan so the collector starts before it
    and stops after it.

    Args:
        app: FastAPI application
        config: Collector configuration
        store: Object store to run against (default: embedded SQLite store)
        prefix: URL prefix for admin endpoints
    """
    app.state.secretgc_config = config
    app.state.secretgc_state = None

    inner_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(asgi_app: FastAPI):
        async with secretgc_lifespan(asgi_app, config, store=store, prefix=prefix):
            async with inner_lifespan(asgi_app) as maybe_state:
                yield maybe_state

    app.router.lifespan_context = lifespan


def get_secretgc_state(app: FastAPI) -> GCState:
    """
    Get collector state from a FastAPI app.

    Raises:
        RuntimeError: If the collector is not initialized
    """
    state = getattr(app.state, "secretgc_state", None)
    if not state:
        raise RuntimeError("secretgc not initialized. Call setup_secretgc_plugin first.")
    return state


def get_secretgc_config(app: FastAPI) -> GCConfig:
    """
    Get collector config from a FastAPI app.

    Raises:
        RuntimeError: If the collector is not initialized
    """
    config = getattr(app.state, "secretgc_config", None)
    if not config:
        raise RuntimeError("secretgc not initialized. Call setup_secretgc_plugin first.")
    return config
