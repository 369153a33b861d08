# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC Exceptions - Custom exceptions for the secretgc package.
"""


class SecretGCError(Exception):
    """Base exception for all secretgc errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(SecretGCError):
    """Raised when configuration is invalid."""

    pass


class StoreError(SecretGCError):
    """Raised when the object store fails to read or write."""

    pass


class NotFoundError(StoreError):
    """Raised when an object, or a whole kind, is not present in the store."""

    pass


class ConflictError(StoreError):
    """Raised when a conditional update loses against a concurrent writer."""

    pass


class IndexRegistrationError(SecretGCError):
    """Raised when a field index cannot be registered."""

    pass


class ReferenceCheckError(SecretGCError):
    """Raised when the still-needed check cannot reach a verdict."""

    pass


class AuditError(SecretGCError):
    """Raised when audit trail operations fail."""

    pass
