# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC Builder - Functional builder pattern for configuration.

This module provides pure functions for building GCConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict

from secretgc.config import (
    DEFAULT_REQUEUE_AFTER_SECONDS,
    SECRET_PROTECTION_FINALIZER,
    SECRET_REF_INDEX_KEY,
    GCConfig,
)


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "protection_finalizer": SECRET_PROTECTION_FINALIZER,
        "secret_ref_index_key": SECRET_REF_INDEX_KEY,
        "requeue_after_seconds": DEFAULT_REQUEUE_AFTER_SECONDS,
        "max_conflict_retries": 3,
        "max_concurrent_reconciles": 1,
        "error_backoff_base_seconds": 0.005,
        "error_backoff_max_seconds": 1000.0,
        "state_path": Path("./secretgc_state"),
        "audit_enabled": True,
        "enqueue_on_reference_delete": True,
    }


def with_finalizer(config: ConfigDict, finalizer: str) -> ConfigDict:
    """
    Set the finalizer token the collector owns.

    Args:
        config: Current configuration dictionary
        finalizer: Finalizer name, e.g. 'example.com/secret-protection'

    Returns:
        New configuration dictionary with the finalizer set
    """
    return {**config, "protection_finalizer": finalizer}


def with_state_path(config: ConfigDict, state_path: Path | str) -> ConfigDict:
    """
    Set the directory for the embedded store and audit trail.

    Args:
        config: Current configuration dictionary
        state_path: Directory path

    Returns:
        New configuration dictionary with state path set
    """
    path = Path(state_path) if isinstance(state_path, str) else state_path
    return {**config, "state_path": path}


def requeue_after(config: ConfigDict, seconds: float) -> ConfigDict:
    """
    Set the delay before re-checking a secret that is still in use.

    Args:
        config: Current configuration dictionary
        seconds: Delay in seconds

    Returns:
        New configuration dictionary with the requeue delay set
    """
    if seconds <= 0:
        raise ValueError(f"requeue delay must be > 0, got {seconds}")
    return {**config, "requeue_after_seconds": float(seconds)}


def with_max_concurrent_reconciles(config: ConfigDict, workers: int) -> ConfigDict:
    """
    Set how many secrets may be reconciled in parallel.

    Args:
        config: Current configuration dictionary
        workers: Number of reconcile workers

    Returns:
        New configuration dictionary with max_concurrent_reconciles set
    """
    if workers < 1:
        raise ValueError(f"max_concurrent_reconciles must be >= 1, got {workers}")
    return {**config, "max_concurrent_reconciles": workers}


def with_error_backoff(
    config: ConfigDict,
    base_seconds: float,
    max_seconds: float,
) -> ConfigDict:
    """
    Set the per-secret exponential backoff applied after reconcile errors.

    Args:
        config: Current configuration dictionary
        base_seconds: Delay after the first failure
        max_seconds: Upper bound for the delay

    Returns:
        New configuration dictionary with backoff set
    """
    return {
        **config,
        "error_backoff_base_seconds": base_seconds,
        "error_backoff_max_seconds": max_seconds,
    }


def with_conflict_retries(config: ConfigDict, retries: int) -> ConfigDict:
    """Set how often one trigger restarts after a resource version conflict."""
    if retries < 0:
        raise ValueError(f"max_conflict_retries must be >= 0, got {retries}")
    return {**config, "max_conflict_retries": retries}


def disable_audit(config: ConfigDict) -> ConfigDict:
    """
    Stop recording finalizer releases in the audit trail.

    Args:
        config: Current configuration dictionary

    Returns:
        New configuration dictionary with auditing disabled
    """
    return {**config, "audit_enabled": False}


def poll_only(config: ConfigDict) -> ConfigDict:
    """
    Only re-check secrets on their own events and requeue timer.

    Referencing resource deletions no longer wake the collector early.
    """
    return {**config, "enqueue_on_reference_delete": False}


def build_config(config_dict: ConfigDict) -> GCConfig:
    """
    Validate and build an immutable GCConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable GCConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    return GCConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

    This allows a more readable pipeline style:

        config = pipe(
            lambda c: with_state_path(c, "/var/lib/secretgc"),
            lambda c: requeue_after(c, 30),
            disable_audit,
        )(create_empty_config())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> GCConfig:
    """
    Build config by applying a sequence of builder functions.

    This is a convenience function that combines pipe() and build_config().
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    *,
    state_path: str | Path | None = None,
    protection_finalizer: str | None = None,
    requeue_after_seconds: float | None = None,
    max_concurrent_reconciles: int | None = None,
    audit_enabled: bool = True,
    **kwargs: Any,
) -> GCConfig:
    """
    Create secret GC configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        state_path: Directory for the embedded store and audit trail
        protection_finalizer: Finalizer owned by the collector
            (default: "secret-protection")
        requeue_after_seconds: Delay before re-checking a secret in use
            (default: 10)
        max_concurrent_reconciles: Parallel reconcile workers (default: 1)
        audit_enabled: Record releases in the audit trail (default: True)
        **kwargs: Additional configuration options

    Returns:
        Validated, immutable GCConfig instance

    Example:
        config = create_config(
            state_path="/var/lib/secretgc",
            requeue_after_seconds=30,
            max_concurrent_reconciles=4,
        )
    """
    config_dict = create_empty_config()

    if state_path:
        config_dict = with_state_path(config_dict, state_path)

    if protection_finalizer:
        config_dict = with_finalizer(config_dict, protection_finalizer)

    if requeue_after_seconds is not None:
        config_dict = requeue_after(config_dict, requeue_after_seconds)

    if max_concurrent_reconciles is not None:
        config_dict = with_max_concurrent_reconciles(
            config_dict, max_concurrent_reconciles
        )

    if not audit_enabled:
        config_dict = disable_audit(config_dict)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
