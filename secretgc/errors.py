# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for secretgc.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_invalid_requeue_after_env(value: str | None) -> str:
    """
    Explain that SECRETGC_REQUEUE_AFTER_SECONDS is invalid.
    """

    return (
        f"Invalid SECRETGC_REQUEUE_AFTER_SECONDS value: {value!r}. "
        "It must be a positive number of seconds."
    )


def explain_invalid_max_reconciles_env(value: str | None) -> str:
    """
    Explain that SECRETGC_MAX_CONCURRENT_RECONCILES is invalid.
    """

    return (
        f"Invalid SECRETGC_MAX_CONCURRENT_RECONCILES value: {value!r}. "
        "It must be an integer >= 1."
    )


def explain_invalid_audit_env(value: str | None) -> str:
    """
    Explain that SECRETGC_AUDIT is invalid.
    """

    return (
        f"Invalid SECRETGC_AUDIT value: {value!r}. "
        "Expected one of: 'true', 'false', '1', '0', 'yes', 'no'."
    )


def explain_invalid_finalizer(value: str | None) -> str:
    """
    Explain that the protection finalizer name is unusable.
    """

    return (
        f"Invalid protection finalizer: {value!r}. "
        "Finalizer names must be non-empty, at most 253 characters and "
        "contain no whitespace, e.g. 'secret-protection' or "
        "'example.com/secret-protection'."
    )


def explain_unregistered_index(kind: str, index_key: str) -> str:
    """
    Explain that a field selector was used without registering its index.
    """

    return (
        f"No field index {index_key!r} is registered for kind {kind!r}. "
        "Call index_client_secret_ref_fields() (or setup_secret_gc()) before "
        "starting the reconciler."
    )
