from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from cloudrecon.shared.adapters.base import BaseAdapter

logger = structlog.get_logger()


@dataclass
class VirtualMachineRecord:
    id: str
    name: str
    resource_group: str
    location: Optional[str] = None
    size: Optional[str] = None
    os_type: Optional[str] = None
    provisioning_state: Optional[str] = None
    power_state: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def from_inventory(cls, item: Dict[str, Any]) -> "VirtualMachineRecord":
        return cls(
            id=item["id"],
            name=item["name"],
            resource_group=item.get("resource_group", ""),
            location=item.get("location"),
            size=item.get("size"),
            os_type=item.get("os_type"),
            provisioning_state=item.get("provisioning_state"),
            tags=dict(item.get("tags") or {}),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "resource_group": self.resource_group,
            "location": self.location,
            "size": self.size,
            "os_type": self.os_type,
            "provisioning_state": self.provisioning_state,
            "power_state": self.power_state,
            "tags": self.tags,
            "error": self.error,
        }


async def collect_vm_inventory(
    adapter: BaseAdapter,
    resource_group: Optional[str] = None,
    *,
    include_power_state: bool = True,
) -> List[VirtualMachineRecord]:
    """
    List VMs with their attributes. Listing failures propagate;
    a failed power-state lookup only marks that VM's record.
    """
    records: List[VirtualMachineRecord] = []
    async for item in adapter.list_virtual_machines(resource_group):
        record = VirtualMachineRecord.from_inventory(item)
        if include_power_state:
            try:
                record.power_state = await adapter.get_power_state(record.resource_group, record.name)
            except Exception as e:
                record.error = str(e)
                logger.warning("vm_power_state_failed", resource_id=record.id, error=str(e))
        records.append(record)

    logger.info("vm_inventory_collected", count=len(records), resource_group=resource_group)
    return records
