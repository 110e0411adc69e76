from typing import AsyncIterator, List, Optional

import structlog

from cloudrecon.modules.reconciliation.domain.models import ResourceDescriptor, ResourceFilter
from cloudrecon.shared.adapters.base import BaseAdapter
from cloudrecon.shared.core.exceptions import ValidationError

logger = structlog.get_logger()


class ResourceEnumerator:
    """
    Lists target resources for a run.
    Any remote failure surfaces as TransportError; the run cannot continue without a list.
    """

    def __init__(self, adapter: BaseAdapter):
        self.adapter = adapter

    def _check_subscription(self, resource_filter: ResourceFilter) -> None:
        requested = (resource_filter.subscription_id or "").strip().lower()
        if requested and requested != self.adapter.subscription_id.lower():
            raise ValidationError(
                f"Filter subscription {resource_filter.subscription_id} does not match "
                f"session subscription {self.adapter.subscription_id}"
            )

    async def list(self, resource_filter: Optional[ResourceFilter] = None) -> AsyncIterator[ResourceDescriptor]:
        resource_filter = resource_filter or ResourceFilter()
        self._check_subscription(resource_filter)
        logger.debug(
            "enumeration_started",
            resource_group=resource_filter.resource_group,
            resource_type=resource_filter.resource_type,
        )
        count = 0
        async for descriptor in self.adapter.list_resources(resource_filter):
            count += 1
            yield descriptor
        logger.info("enumeration_completed", count=count)

    async def collect(self, resource_filter: Optional[ResourceFilter] = None) -> List[ResourceDescriptor]:
        return [d async for d in self.list(resource_filter)]
