from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from cloudrecon.modules.reconciliation.domain.models import ResourceDescriptor, ResourceFilter
from cloudrecon.shared.core.exceptions import TransportError


@dataclass(frozen=True)
class AlertRuleSpec:
    """Provider-neutral shape of a single-metric static-threshold alert rule."""
    scope_id: str
    metric_name: str
    metric_namespace: str
    threshold: float
    severity: int
    window_minutes: int
    frequency_minutes: int
    action_group_id: Optional[str] = None
    operator: str = "GreaterThan"
    time_aggregation: str = "Average"
    description: str = ""
    enabled: bool = True
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AlertRule:
    """An alert rule as it currently exists remotely."""
    id: str
    name: str
    resource_group: str
    spec: AlertRuleSpec


class BaseAdapter(ABC):
    """
    Abstract collaborator interface for the cloud control plane.

    One adapter instance is the explicit authenticated session of a run:
    it is constructed once and handed to the enumerator and every reconciler.
    """
    last_error: Optional[str] = None

    def _clear_last_error(self) -> None:
        """Reset adapter error state before a new operation."""
        self.last_error = None

    def _set_last_error(self, message: str) -> None:
        """Store a sanitized adapter error message suitable for operator-facing output."""
        self.last_error = TransportError(message).message

    @property
    @abstractmethod
    def subscription_id(self) -> str:
        """Subscription this session is bound to."""
        raise NotImplementedError()

    @abstractmethod
    async def verify_connection(self) -> bool:
        """Verify that the configured credentials are valid."""
        raise NotImplementedError()

    @abstractmethod
    def list_resources(self, resource_filter: ResourceFilter) -> AsyncIterator[ResourceDescriptor]:
        """Lazily list resources matching the filter."""
        raise NotImplementedError()

    @abstractmethod
    def list_virtual_machines(self, resource_group: Optional[str] = None) -> AsyncIterator[Dict[str, Any]]:
        """Lazily list VMs with inventory attributes."""
        raise NotImplementedError()

    @abstractmethod
    async def get_power_state(self, resource_group: str, vm_name: str) -> Optional[str]:
        raise NotImplementedError()

    @abstractmethod
    async def get_metric(
        self,
        resource_id: str,
        metric_name: str,
        aggregation: str,
        window: timedelta,
    ) -> Optional[float]:
        """Aggregate a metric over the window; None when no data points exist."""
        raise NotImplementedError()

    @abstractmethod
    async def query_log(
        self, workspace_id: str, query: str, timespan: timedelta
    ) -> List[Dict[str, Any]]:
        """Run a Log Analytics query and return rows as dicts."""
        raise NotImplementedError()

    @abstractmethod
    async def get_action_group_id(self, name: str, resource_group: str) -> Optional[str]:
        raise NotImplementedError()

    @abstractmethod
    async def get_alert_rule(self, name: str, resource_group: str) -> Optional[AlertRule]:
        """Return the existing rule, or None when it does not exist."""
        raise NotImplementedError()

    @abstractmethod
    async def create_alert_rule(self, name: str, resource_group: str, spec: AlertRuleSpec) -> None:
        """Create or update a metric alert rule."""
        raise NotImplementedError()

    @abstractmethod
    async def get_policy_definition(self, name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError()

    @abstractmethod
    async def create_policy_definition(self, name: str, definition: Dict[str, Any]) -> None:
        raise NotImplementedError()

    async def close(self) -> None:
        """Release clients; default is a no-op."""
        return None

    async def __aenter__(self) -> "BaseAdapter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
