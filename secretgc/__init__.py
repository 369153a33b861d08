# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC - Garbage collector for shared credential secrets.

Keeps a protection finalizer on secrets that managed resources
authenticate with, and drops it only once no managed resource in the
secret's namespace references the secret any more, so resources being
deleted can still use it for their own remote cleanup. Package name:
secretgc.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from secretgc.builder import create_config
from secretgc.env import create_config_from_env

# Core functions
from secretgc.core import (
    Outcome,
    ReconcileResult,
    initialize_gc_state,
    reconcile_secret,
    get_metrics,
    shutdown_gc_state,
)

# Controller
from secretgc.controller import setup_secret_gc, start_controller

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    # Core reconcile functions
    "Outcome",
    "ReconcileResult",
    "initialize_gc_state",
    "reconcile_secret",
    "get_metrics",
    "shutdown_gc_state",
    # Controller
    "setup_secret_gc",
    "start_controller",
]
