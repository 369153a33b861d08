# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Secret GC Resources - Object model for secrets and the resources using them.

Every stored object carries an ObjectMeta with its namespace-qualified
name, a resource version for optimistic concurrency, a set of finalizers
and a deletion timestamp. Managed resources additionally declare the
secret holding their API token through ``auth_secret_ref``.

The set of managed resource kinds is fixed: REFERENCING_KINDS lists every
kind the garbage collector consults before releasing a secret.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Protocol, Tuple, Type, TypeVar, runtime_checkable


T = TypeVar("T", bound="StoredObject")


@dataclass
class ObjectMeta:
    """Identity and lifecycle metadata shared by every stored object."""

    name: str
    namespace: str = "default"
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: datetime | None = None
    resource_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "finalizers": list(self.finalizers),
            "deletion_timestamp": (
                self.deletion_timestamp.isoformat() if self.deletion_timestamp else None
            ),
            "resource_version": self.resource_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        deletion_timestamp = data.get("deletion_timestamp")
        return cls(
            name=data["name"],
            namespace=data.get("namespace", "default"),
            finalizers=list(data.get("finalizers") or []),
            deletion_timestamp=(
                datetime.fromisoformat(deletion_timestamp) if deletion_timestamp else None
            ),
            resource_version=int(data.get("resource_version", 0)),
        )


@dataclass
class StoredObject:
    """Base class for everything kept in the object store."""

    kind: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def key(self) -> Tuple[str, str]:
        """(namespace, name) of this object."""
        return (self.metadata.namespace, self.metadata.name)

    def to_dict(self) -> Dict[str, Any]:
        body = asdict(self)
        body.pop("metadata")
        return {"kind": self.kind, "metadata": self.metadata.to_dict(), **body}

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        kwargs = {
            f.name: data[f.name]
            for f in fields(cls)
            if f.name != "metadata" and f.name in data
        }
        return cls(metadata=ObjectMeta.from_dict(data["metadata"]), **cls._decode(kwargs))

    @classmethod
    def _decode(cls, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return kwargs


@dataclass
class Secret(StoredObject):
    """An opaque credential object shared by managed resources."""

    kind: ClassVar[str] = "Secret"

    data: Dict[str, str] = field(default_factory=dict)


@dataclass
class SecretReference:
    """Reference to a secret in the same namespace."""

    name: str
    key: str = "token"


@runtime_checkable
class HasSecretReference(Protocol):
    """Anything that declares which secret authenticates it."""

    auth_secret_ref: SecretReference


@dataclass
class ManagedResource(StoredObject):
    """
    A resource whose remote deletion is authenticated with a secret.

    ``spec`` holds the kind-specific desired state; the collector never
    looks at it, it only cares about ``auth_secret_ref``.
    """

    auth_secret_ref: SecretReference
    spec: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _decode(cls, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        ref = kwargs.get("auth_secret_ref")
        if isinstance(ref, dict):
            kwargs["auth_secret_ref"] = SecretReference(**ref)
        return kwargs


class Kafka(ManagedResource):
    kind = "Kafka"


class KafkaACL(ManagedResource):
    kind = "KafkaACL"


class KafkaTopic(ManagedResource):
    kind = "KafkaTopic"


class KafkaSchema(ManagedResource):
    kind = "KafkaSchema"


class Project(ManagedResource):
    kind = "Project"


class ProjectVPC(ManagedResource):
    kind = "ProjectVPC"


class ServiceIntegration(ManagedResource):
    kind = "ServiceIntegration"


class ServiceUser(ManagedResource):
    kind = "ServiceUser"


class PG(ManagedResource):
    kind = "PG"


class Database(ManagedResource):
    kind = "Database"


class ConnectionPool(ManagedResource):
    kind = "ConnectionPool"


# Checked in this order; the first kind still using a secret wins
REFERENCING_KINDS: Tuple[Type[ManagedResource], ...] = (
    Kafka,
    KafkaACL,
    KafkaTopic,
    KafkaSchema,
    Project,
    ProjectVPC,
    ServiceIntegration,
    ServiceUser,
    PG,
    Database,
    ConnectionPool,
)

ALL_KINDS: Tuple[Type[StoredObject], ...] = (Secret, *REFERENCING_KINDS)
