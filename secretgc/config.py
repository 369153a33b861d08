# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while reconcilers are running.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List
import re


# Finalizer owned by the secret garbage collector
SECRET_PROTECTION_FINALIZER = "secret-protection"

# Key the secret reference of managed resources is indexed under
SECRET_REF_INDEX_KEY = "spec.auth_secret_ref.name"

# Delay before re-checking a secret that is still in use
DEFAULT_REQUEUE_AFTER_SECONDS = 10.0


def _validate_finalizer(name: str) -> bool:
    """
    Validate a finalizer token.

    Rules:
    - 1-253 characters
    - No whitespace
    - Optional "domain/" qualifier, name part must not be empty
    """
    if not name or len(name) > 253:
        return False

    if re.search(r"\s", name):
        return False

    if "/" in name:
        domain, _, short = name.partition("/")
        if not domain or not short or "/" in short:
            return False

    return True


@dataclass(frozen=True)
class GCConfig:
    """
    Immutable configuration for the secret garbage collector.

    This configuration is frozen after creation so that concurrently
    running reconcilers all observe the same values.
    """

    # Finalizer the collector places on and removes from secrets
    protection_finalizer: str = SECRET_PROTECTION_FINALIZER

    # Field index key for the secret reference of managed resources
    secret_ref_index_key: str = SECRET_REF_INDEX_KEY

    # Delay before re-checking a secret that is still referenced
    requeue_after_seconds: float = DEFAULT_REQUEUE_AFTER_SECONDS

    # Extra attempts within one trigger after a resource version conflict
    max_conflict_retries: int = 3

    # Number of secrets reconciled in parallel (never the same secret twice)
    max_concurrent_reconciles: int = 1

    # Per-secret exponential backoff after reconcile errors
    error_backoff_base_seconds: float = 0.005
    error_backoff_max_seconds: float = 1000.0

    # Directory holding the embedded object store and the audit trail
    state_path: Path = field(default_factory=lambda: Path("./secretgc_state"))

    # Record every finalizer release in the audit trail
    audit_enabled: bool = True

    # Wake the collector when a referencing resource disappears
    enqueue_on_reference_delete: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not _validate_finalizer(self.protection_finalizer):
            errors.append(f"Invalid protection_finalizer: {self.protection_finalizer!r}")

        if not self.secret_ref_index_key:
            errors.append("secret_ref_index_key must not be empty")

        if self.requeue_after_seconds <= 0:
            errors.append(
                f"requeue_after_seconds must be > 0, got {self.requeue_after_seconds}"
            )

        if self.max_conflict_retries < 0:
            errors.append(
                f"max_conflict_retries must be >= 0, got {self.max_conflict_retries}"
            )

        if self.max_concurrent_reconciles < 1:
            errors.append(
                "max_concurrent_reconciles must be >= 1, "
                f"got {self.max_concurrent_reconciles}"
            )

        if self.error_backoff_base_seconds <= 0:
            errors.append(
                "error_backoff_base_seconds must be > 0, "
                f"got {self.error_backoff_base_seconds}"
            )

        if self.error_backoff_max_seconds < self.error_backoff_base_seconds:
            errors.append("error_backoff_max_seconds must be >= error_backoff_base_seconds")

        # Raise all errors at once
        if errors:
            from secretgc.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    def with_updates(self, **kwargs) -> "GCConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return GCConfig(**current)
