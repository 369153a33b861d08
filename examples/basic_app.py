# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with secretgc Integration.

A tiny "managed databases" API. Every database authenticates with a
secret; the secret gets the protection finalizer when a database starts
using it, and secretgc lets a deleted secret go once no managed resource
in its namespace references it anymore.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    SECRETGC_STATE_PATH: Directory for the embedded store and audit trail
    SECRETGC_REQUEUE_AFTER_SECONDS: Re-check delay for secrets in use
    SECRETGC_ADMIN_API_KEY: API key for admin endpoints
"""

import os
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from secretgc.builder import (
    build_config,
    create_empty_config,
    requeue_after,
    with_max_concurrent_reconciles,
    with_state_path,
)
from secretgc.exceptions import ConflictError, NotFoundError, SecretGCError
from secretgc.finalizers import ensure_secret_protection
from secretgc.integrations.fastapi import get_secretgc_config, get_secretgc_state, setup_secretgc_plugin
from secretgc.resources import Database, ObjectMeta, Secret, SecretReference

# Create FastAPI app
app = FastAPI(
    title="Managed Databases with secretgc",
    description="Example application demonstrating secret protection finalizers",
    version="1.0.0",
)


# Build secretgc configuration
def create_secretgc_config():
    """
    Create secretgc configuration from environment variables.

    This uses the functional builder pattern for clean, composable configuration.
    """
    state_path = Path(os.getenv("SECRETGC_STATE_PATH", "./secretgc_state"))
    requeue_seconds = float(os.getenv("SECRETGC_REQUEUE_AFTER_SECONDS", "10"))

    config = create_empty_config()
    config = with_state_path(config, state_path)

    # Re-check secrets still in use every few seconds
    config = requeue_after(config, requeue_seconds)

    # Different secrets may be released in parallel
    config = with_max_concurrent_reconciles(config, 2)

    return build_config(config)


secretgc_config = create_secretgc_config()

# Setup secretgc plugin
setup_secretgc_plugin(app, secretgc_config)


# ============================================================================
# Application Routes
# ============================================================================


class SecretIn(BaseModel):
    """Example secret payload."""

    namespace: str = "default"
    name: str
    token: str


class DatabaseIn(BaseModel):
    """Example managed database payload."""

    namespace: str = "default"
    name: str
    secret_name: str
    plan: str = "startup-4"


def _store(request: Request):
    return get_secretgc_state(request.app)["store"]


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to Managed Databases with secretgc",
        "docs": "/docs",
        "secretgc_admin": "/admin/secretgc/health",
    }


@app.post("/secrets")
async def create_secret(request: Request, body: SecretIn) -> dict:
    """Create a secret."""
    try:
        secret = await _store(request).create(
            Secret(
                metadata=ObjectMeta(name=body.name, namespace=body.namespace),
                data={"token": body.token},
            )
        )
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message) from e
    return {"namespace": body.namespace, "name": body.name, "version": secret.metadata.resource_version}


@app.get("/secrets/{namespace}/{name}")
async def get_secret(request: Request, namespace: str, name: str) -> dict:
    """Show a secret's finalizers and deletion state (never its data)."""
    try:
        secret = await _store(request).get(Secret, namespace, name)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    deleting = secret.metadata.deletion_timestamp
    return {
        "namespace": namespace,
        "name": name,
        "finalizers": secret.metadata.finalizers,
        "deletion_requested_at": deleting.isoformat() if deleting else None,
    }


@app.delete("/secrets/{namespace}/{name}")
async def delete_secret(request: Request, namespace: str, name: str) -> dict:
    """
    Delete a secret.

    A protected secret only gets its deletion timestamp here; secretgc
    finishes the deletion once no database uses it.
    """
    try:
        removed = await _store(request).delete(Secret, namespace, name)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    return {"deleted": removed, "pending": not removed}


@app.post("/databases")
async def create_database(request: Request, body: DatabaseIn) -> dict:
    """Create a managed database authenticated with an existing secret."""
    store = _store(request)
    finalizer = get_secretgc_config(request.app).protection_finalizer

    try:
        # Protect the secret before anything depends on it
        await ensure_secret_protection(store, body.namespace, body.secret_name, finalizer)
        await store.create(
            Database(
                metadata=ObjectMeta(name=body.name, namespace=body.namespace),
                auth_secret_ref=SecretReference(name=body.secret_name),
                spec={"plan": body.plan},
            )
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message) from e
    except SecretGCError as e:
        raise HTTPException(status_code=503, detail=e.message) from e

    return {"namespace": body.namespace, "name": body.name, "secret": body.secret_name}


@app.delete("/databases/{namespace}/{name}")
async def delete_database(request: Request, namespace: str, name: str) -> dict:
    """Delete a managed database; its secret may be released afterwards."""
    try:
        removed = await _store(request).delete(Database, namespace, name)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    return {"deleted": removed}


# ============================================================================
# secretgc Admin Endpoints (auto-registered by plugin)
# ============================================================================
#
# The following endpoints are automatically registered by setup_secretgc_plugin:
#
# GET  /admin/secretgc/health       - Health check
# GET  /admin/secretgc/status       - Current collector status
# GET  /admin/secretgc/metrics      - Reconcile metrics
# GET  /admin/secretgc/config       - Configuration
# GET  /admin/secretgc/waiting      - Secrets waiting for their users to go
# POST /admin/secretgc/reconcile/{namespace}/{name} - Trigger a reconcile
# GET  /admin/secretgc/releases     - List finalizer releases
# GET  /admin/secretgc/audit-stats  - Audit statistics
#
# All admin endpoints require: Authorization: Bearer <SECRETGC_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
