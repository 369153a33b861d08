# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

A small wrapper around create_config() that reads well-known
environment variables, so deployments can be tuned without code changes.
"""

from __future__ import annotations

import os
from pathlib import Path

from secretgc.builder import create_config
from secretgc.config import GCConfig
from secretgc.errors import (
    explain_invalid_audit_env,
    explain_invalid_finalizer,
    explain_invalid_max_reconciles_env,
    explain_invalid_requeue_after_env,
)
from secretgc.exceptions import ConfigurationError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_requeue_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_requeue_after_env(value)) from exc
    if seconds <= 0:
        raise ConfigurationError(explain_invalid_requeue_after_env(value))
    return seconds


def _parse_max_reconciles(value: str | None) -> int | None:
    if not value:
        return None
    try:
        workers = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_max_reconciles_env(value)) from exc
    if workers < 1:
        raise ConfigurationError(explain_invalid_max_reconciles_env(value))
    return workers


def _parse_bool(value: str | None, default: bool) -> bool:
    if not value:
        return default
    lower = value.strip().lower()
    if lower in _TRUE_VALUES:
        return True
    if lower in _FALSE_VALUES:
        return False
    raise ConfigurationError(explain_invalid_audit_env(value))


def create_config_from_env() -> GCConfig:
    """
    Create a GCConfig from environment variables.

    Optional environment variables:
        - SECRETGC_STATE_PATH: Directory for store and audit DBs
          (default: ./secretgc_state)
        - SECRETGC_FINALIZER: Finalizer owned by the collector
          (default: secret-protection)
        - SECRETGC_REQUEUE_AFTER_SECONDS: Positive number (default: 10)
        - SECRETGC_MAX_CONCURRENT_RECONCILES: Integer >= 1 (default: 1)
        - SECRETGC_AUDIT: 'true' | 'false' (default: true)
    """

    state_path_env = os.getenv("SECRETGC_STATE_PATH")
    state_path = Path(state_path_env) if state_path_env else None

    finalizer = os.getenv("SECRETGC_FINALIZER")
    if finalizer is not None and not finalizer.strip():
        raise ConfigurationError(explain_invalid_finalizer(finalizer))

    try:
        return create_config(
            state_path=state_path,
            protection_finalizer=finalizer,
            requeue_after_seconds=_parse_requeue_after(
                os.getenv("SECRETGC_REQUEUE_AFTER_SECONDS")
            ),
            max_concurrent_reconciles=_parse_max_reconciles(
                os.getenv("SECRETGC_MAX_CONCURRENT_RECONCILES")
            ),
            audit_enabled=_parse_bool(os.getenv("SECRETGC_AUDIT"), True),
        )
    except ConfigurationError as exc:
        if finalizer and any("protection_finalizer" in e for e in exc.details.get("errors", [])):
            raise ConfigurationError(explain_invalid_finalizer(finalizer)) from exc
        raise
