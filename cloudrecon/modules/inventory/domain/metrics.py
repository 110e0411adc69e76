from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cloudrecon.modules.reconciliation.domain.enumerator import ResourceEnumerator
from cloudrecon.modules.reconciliation.domain.models import (
    ResourceDescriptor,
    ResourceFilter,
    ResourceType,
)
from cloudrecon.shared.adapters.base import BaseAdapter

logger = structlog.get_logger()

AGGREGATIONS = ("average", "maximum", "minimum", "total", "count")


class MetricsQueryConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    metric_name: str = Field(default="Percentage CPU", min_length=1)
    aggregation: str = "average"
    lookback_hours: int = Field(default=1, ge=1, le=720)
    resource_group: Optional[str] = None
    resource_type: Optional[str] = ResourceType.VIRTUAL_MACHINE.value

    @field_validator("aggregation")
    @classmethod
    def validate_aggregation(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in AGGREGATIONS:
            raise ValueError(f"aggregation must be one of {AGGREGATIONS}")
        return normalized

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.lookback_hours)

    @property
    def resource_filter(self) -> ResourceFilter:
        return ResourceFilter(resource_group=self.resource_group, resource_type=self.resource_type)


@dataclass(frozen=True)
class MetricReading:
    resource: ResourceDescriptor
    metric_name: str
    aggregation: str
    value: Optional[float] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource.id,
            "name": self.resource.name,
            "resource_group": self.resource.resource_group,
            "metric": self.metric_name,
            "aggregation": self.aggregation,
            "value": None if self.value is None else round(self.value, 4),
            "error": self.error,
        }


async def read_metric(
    adapter: BaseAdapter, resource: ResourceDescriptor, config: MetricsQueryConfig
) -> MetricReading:
    try:
        value = await adapter.get_metric(
            resource.id, config.metric_name, config.aggregation, config.window
        )
    except Exception as e:
        logger.warning("metric_read_failed", resource_id=resource.id, error=str(e))
        return MetricReading(resource, config.metric_name, config.aggregation, error=str(e))
    if value is None:
        logger.debug("metric_no_data", resource_id=resource.id, metric=config.metric_name)
    return MetricReading(resource, config.metric_name, config.aggregation, value=value)


async def collect_metrics(adapter: BaseAdapter, config: MetricsQueryConfig) -> List[MetricReading]:
    enumerator = ResourceEnumerator(adapter)
    readings = [
        await read_metric(adapter, resource, config)
        async for resource in enumerator.list(config.resource_filter)
    ]
    logger.info(
        "metrics_collected",
        metric=config.metric_name,
        aggregation=config.aggregation,
        count=len(readings),
        failed=sum(1 for r in readings if r.error),
    )
    return readings
