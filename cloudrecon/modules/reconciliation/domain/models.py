from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ResourceType(str, Enum):
    VIRTUAL_MACHINE = "Microsoft.Compute/virtualMachines"
    DISK = "Microsoft.Compute/disks"
    NETWORK_INTERFACE = "Microsoft.Network/networkInterfaces"
    PUBLIC_IP = "Microsoft.Network/publicIPAddresses"
    STORAGE_ACCOUNT = "Microsoft.Storage/storageAccounts"
    POLICY_DEFINITION = "Microsoft.Authorization/policyDefinitions"
    DIRECTORY_USER = "Microsoft.Graph/users"
    OTHER = "other"

    @classmethod
    def from_arm_type(cls, arm_type: Optional[str]) -> "ResourceType":
        normalized = str(arm_type or "").strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return cls.OTHER


class OutcomeStatus(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


def resource_group_from_id(resource_id: str) -> str:
    """Extract the resource group segment from an ARM id ('' when absent)."""
    parts = [p for p in str(resource_id or "").split("/") if p]
    lowered = [p.lower() for p in parts]
    if "resourcegroups" in lowered:
        idx = lowered.index("resourcegroups")
        if idx + 1 < len(parts):
            return parts[idx + 1]
    return ""


@dataclass(frozen=True)
class ResourceDescriptor:
    id: str
    name: str
    resource_group: str
    type: ResourceType = ResourceType.OTHER

    @classmethod
    def from_arm(cls, resource_id: str, name: str, arm_type: Optional[str]) -> "ResourceDescriptor":
        return cls(
            id=resource_id,
            name=name,
            resource_group=resource_group_from_id(resource_id),
            type=ResourceType.from_arm_type(arm_type),
        )


@dataclass(frozen=True)
class ResourceFilter:
    """Enumeration filter; unset fields do not constrain the listing."""
    subscription_id: Optional[str] = None
    resource_group: Optional[str] = None
    resource_type: Optional[str] = None  # ARM type, e.g. Microsoft.Compute/virtualMachines


@dataclass(frozen=True)
class ActionRequest:
    target: ResourceDescriptor
    desired_state: Any


@dataclass(frozen=True)
class ActionOutcome:
    target: ResourceDescriptor
    status: OutcomeStatus
    detail: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.target.id,
            "name": self.target.name,
            "resource_group": self.target.resource_group,
            "type": self.target.type.value,
            "status": self.status.value,
            "detail": self.detail,
        }


@dataclass
class RunSummary:
    """Outcomes of one run, kept in enumeration order."""
    action: str
    dry_run: bool = False
    outcomes: List[ActionOutcome] = field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def created(self) -> int:
        return self.count(OutcomeStatus.CREATED)

    @property
    def skipped(self) -> int:
        return self.count(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(OutcomeStatus.FAILED)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "dry_run": self.dry_run,
            "total": len(self.outcomes),
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
            "outcomes": [o.as_dict() for o in self.outcomes],
        }
