"""
Shared fixtures for the cloudrecon test suite.

Provides:
- Test environment (set before any cloudrecon import)
- An in-memory FakeAdapter standing in for the Azure control plane
- VM descriptor factory
"""
import asyncio
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

# Set test environment BEFORE any cloudrecon imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["AZURE_AUTH_METHOD"] = "auto"
os.environ["AZURE_SUBSCRIPTION_ID"] = "00000000-0000-0000-0000-000000000001"

import pytest  # noqa: E402
import structlog  # noqa: E402

from cloudrecon.modules.reconciliation.domain.models import (  # noqa: E402
    ResourceDescriptor,
    ResourceFilter,
    ResourceType,
)
from cloudrecon.shared.adapters.base import AlertRule, AlertRuleSpec, BaseAdapter  # noqa: E402
from cloudrecon.shared.core.config import get_settings  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"


class FakeAdapter(BaseAdapter):
    """In-memory control plane. Mutating calls are recorded and can be made to fail per name."""

    def __init__(self, subscription_id: str = SUBSCRIPTION_ID):
        self._subscription_id = subscription_id
        self.resources: List[ResourceDescriptor] = []
        self.vms: List[Dict[str, Any]] = []
        self.power_states: Dict[str, Any] = {}
        self.metrics: Dict[str, Any] = {}
        self.log_rows: Any = []
        self.queries: List[Tuple[str, str, timedelta]] = []
        self.action_groups: Dict[Tuple[str, str], str] = {}
        self.alert_rules: Dict[Tuple[str, str], AlertRule] = {}
        self.policies: Dict[str, Dict[str, Any]] = {}
        self.fail_on: Dict[str, Exception] = {}
        self.create_delay: Dict[str, float] = {}
        self.list_error: Optional[Exception] = None
        self.verify_ok = True
        self.create_calls: List[Tuple[str, str, AlertRuleSpec]] = []
        self.policy_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.closed = False

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    async def verify_connection(self) -> bool:
        self._clear_last_error()
        if not self.verify_ok:
            self._set_last_error("AADSTS7000215: Invalid client secret provided")
        return self.verify_ok

    async def list_resources(self, resource_filter: ResourceFilter):
        for resource in self.resources:
            if (
                resource_filter.resource_group
                and resource.resource_group.lower() != resource_filter.resource_group.lower()
            ):
                continue
            if (
                resource_filter.resource_type
                and resource.type.value.lower() != resource_filter.resource_type.lower()
            ):
                continue
            yield resource
        if self.list_error is not None:
            raise self.list_error

    async def list_virtual_machines(self, resource_group: Optional[str] = None):
        for vm in self.vms:
            if resource_group and vm["resource_group"] != resource_group:
                continue
            yield vm
        if self.list_error is not None:
            raise self.list_error

    async def get_power_state(self, resource_group: str, vm_name: str) -> Optional[str]:
        state = self.power_states.get(vm_name)
        if isinstance(state, Exception):
            raise state
        return state

    async def get_metric(self, resource_id, metric_name, aggregation, window) -> Optional[float]:
        value = self.metrics.get(resource_id)
        if isinstance(value, Exception):
            raise value
        return value

    async def query_log(self, workspace_id, query, timespan):
        self.queries.append((workspace_id, query, timespan))
        if isinstance(self.log_rows, Exception):
            raise self.log_rows
        return list(self.log_rows)

    async def get_action_group_id(self, name: str, resource_group: str) -> Optional[str]:
        return self.action_groups.get((resource_group, name))

    async def get_alert_rule(self, name: str, resource_group: str) -> Optional[AlertRule]:
        return self.alert_rules.get((resource_group, name))

    async def create_alert_rule(self, name: str, resource_group: str, spec: AlertRuleSpec) -> None:
        self.create_calls.append((name, resource_group, spec))
        delay = self.create_delay.get(name)
        if delay:
            await asyncio.sleep(delay)
        if name in self.fail_on:
            raise self.fail_on[name]
        self.alert_rules[(resource_group, name)] = AlertRule(
            id=(
                f"/subscriptions/{self._subscription_id}/resourceGroups/{resource_group}"
                f"/providers/Microsoft.Insights/metricAlerts/{name}"
            ),
            name=name,
            resource_group=resource_group,
            spec=spec,
        )

    async def get_policy_definition(self, name: str) -> Optional[Dict[str, Any]]:
        return self.policies.get(name)

    async def create_policy_definition(self, name: str, definition: Dict[str, Any]) -> None:
        self.policy_calls.append((name, definition))
        if name in self.fail_on:
            raise self.fail_on[name]
        self.policies[name] = {"id": f"/providers/policyDefinitions/{name}", "name": name, **definition}

    async def close(self) -> None:
        self.closed = True


def vm_descriptor(name: str, resource_group: str = "rg-app") -> ResourceDescriptor:
    return ResourceDescriptor(
        id=(
            f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.Compute/virtualMachines/{name}"
        ),
        name=name,
        resource_group=resource_group,
        type=ResourceType.VIRTUAL_MACHINE,
    )


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def make_vm():
    return vm_descriptor


@pytest.fixture(autouse=True)
def _isolate_settings_and_logging():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
