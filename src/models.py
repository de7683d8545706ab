"""
Resource Model - Desired mapping resources and their status.

A mapping resource declares that one service instance should be mapped to
the current cluster and a target namespace. Resources are identified by
namespace and name and carry Kubernetes-style metadata (finalizers,
deletion timestamp, generation, resource version).
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

FINALIZER_NAME = "hanamappings.hana.cloud.sap.com/finalizer"

CONDITION_TYPE_READY = "Ready"

CONDITION_REASON_IN_PROGRESS = "InProgress"
CONDITION_REASON_SUCCEEDED = "Succeeded"
CONDITION_REASON_FAILED = "Failed"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"


@dataclass(frozen=True)
class NamespacedName:
    """Identity of a namespaced object."""

    namespace: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NamespacedName":
        data = data or {}
        return cls(namespace=data.get("namespace", ""), name=data.get("name", ""))

    def to_dict(self) -> Dict[str, str]:
        return {"namespace": self.namespace, "name": self.name}


@dataclass
class Mapping:
    """The desired service instance to namespace pairing."""

    service_instance_id: str = ""
    target_namespace: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Mapping":
        data = data or {}
        return cls(
            service_instance_id=data.get("serviceInstanceID", ""),
            target_namespace=data.get("targetNamespace", ""),
        )

    def to_dict(self) -> Dict[str, str]:
        result = {"serviceInstanceID": self.service_instance_id}
        if self.target_namespace:
            result["targetNamespace"] = self.target_namespace
        return result


@dataclass
class MappingSpec:
    """Desired state of a mapping resource."""

    mapping: Mapping = field(default_factory=Mapping)
    admin_api_access_secret: NamespacedName = field(default_factory=NamespacedName)
    btp_operator_configmap: NamespacedName = field(default_factory=NamespacedName)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MappingSpec":
        data = data or {}
        return cls(
            mapping=Mapping.from_dict(data.get("mapping")),
            admin_api_access_secret=NamespacedName.from_dict(
                data.get("adminAPIAccessSecret")
            ),
            btp_operator_configmap=NamespacedName.from_dict(
                data.get("btpOperatorConfigmap")
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mapping": self.mapping.to_dict(),
            "adminAPIAccessSecret": self.admin_api_access_secret.to_dict(),
            "btpOperatorConfigmap": self.btp_operator_configmap.to_dict(),
        }


@dataclass(frozen=True)
class MappingID:
    """Compound key of an external mapping record."""

    service_instance_id: str
    primary_id: str
    secondary_id: str

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["MappingID"]:
        if not data:
            return None
        return cls(
            service_instance_id=data["serviceInstanceID"],
            primary_id=data["primaryID"],
            secondary_id=data["secondaryID"],
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "serviceInstanceID": self.service_instance_id,
            "primaryID": self.primary_id,
            "secondaryID": self.secondary_id,
        }


@dataclass
class Condition:
    """A single status condition, unique per type."""

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=data["status"],
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def set_status_condition(conditions: List[Condition], new: Condition) -> None:
    """
    Set a condition in place, keeping at most one entry per type.

    The transition time is only bumped when the condition's status changes;
    reason and message are always overwritten.
    """
    for existing in conditions:
        if existing.type != new.type:
            continue
        if existing.status != new.status:
            existing.status = new.status
            existing.last_transition_time = new.last_transition_time or _now()
        existing.reason = new.reason
        existing.message = new.message
        return

    if not new.last_transition_time:
        new.last_transition_time = _now()
    conditions.append(new)


def find_status_condition(
    conditions: List[Condition], condition_type: str
) -> Optional[Condition]:
    """Return the condition of the given type, if any."""
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


@dataclass
class MappingStatus:
    """Observed state of a mapping resource."""

    conditions: Optional[List[Condition]] = None
    mapping_id: Optional[MappingID] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MappingStatus":
        data = data or {}
        conditions = data.get("conditions")
        return cls(
            conditions=(
                [Condition.from_dict(c) for c in conditions]
                if conditions is not None
                else None
            ),
            mapping_id=MappingID.from_dict(data.get("mappingID")),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.conditions is not None:
            result["conditions"] = [c.to_dict() for c in self.conditions]
        if self.mapping_id is not None:
            result["mappingID"] = self.mapping_id.to_dict()
        return result


@dataclass
class MappingResource:
    """A desired mapping resource as persisted by the store."""

    namespace: str
    name: str
    spec: MappingSpec = field(default_factory=MappingSpec)
    status: MappingStatus = field(default_factory=MappingStatus)
    finalizers: List[str] = field(default_factory=list)
    generation: int = 1
    resource_version: int = 1
    deletion_timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_reconcile_time: Optional[datetime] = None
    retry_count: int = 0

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(namespace=self.namespace, name=self.name)

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.finalizers:
            self.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.finalizers = [f for f in self.finalizers if f != finalizer]

    def deep_copy(self) -> "MappingResource":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the API representation."""
        return {
            "namespace": self.namespace,
            "name": self.name,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
            "finalizers": list(self.finalizers),
            "generation": self.generation,
            "resource_version": self.resource_version,
            "deletion_timestamp": self.deletion_timestamp,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_reconcile_time": self.last_reconcile_time,
        }
