from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    ResourceNotFoundError,
)
from azure.identity.aio import ClientSecretCredential, DefaultAzureCredential
from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.monitor.aio import MonitorManagementClient
from azure.mgmt.monitor.models import (
    MetricAlertAction,
    MetricAlertResource,
    MetricAlertSingleResourceMultipleMetricCriteria,
    MetricCriteria,
)
from azure.mgmt.resource.policy.aio import PolicyClient
from azure.mgmt.resource.policy.models import PolicyDefinition
from azure.mgmt.resource.resources.aio import ResourceManagementClient
from azure.monitor.query import LogsQueryStatus, MetricAggregationType
from azure.monitor.query.aio import LogsQueryClient, MetricsQueryClient

from cloudrecon.modules.reconciliation.domain.models import (
    ResourceDescriptor,
    ResourceFilter,
    resource_group_from_id,
)
from cloudrecon.shared.adapters.base import AlertRule, AlertRuleSpec, BaseAdapter
from cloudrecon.shared.core.credentials import AzureCredentials
from cloudrecon.shared.core.exceptions import (
    AuthenticationError,
    CloudReconError,
    ConfigurationError,
    TransportError,
)
from cloudrecon.shared.core.kql import odata_string

logger = structlog.get_logger()

_AGGREGATIONS = {
    "average": MetricAggregationType.AVERAGE,
    "maximum": MetricAggregationType.MAXIMUM,
    "minimum": MetricAggregationType.MINIMUM,
    "total": MetricAggregationType.TOTAL,
    "count": MetricAggregationType.COUNT,
}

_METRIC_ALERT_CRITERIA_NAME = "Metric1"


def translate_azure_error(exc: Exception, operation: str) -> CloudReconError:
    """Map Azure SDK exceptions onto the cloudrecon taxonomy."""
    if isinstance(exc, CloudReconError):
        return exc
    if isinstance(exc, ClientAuthenticationError):
        return AuthenticationError(f"Azure authentication failed during {operation}: {exc}")
    if isinstance(exc, AzureError):
        return TransportError(f"Azure {operation} failed: {exc}")
    return TransportError(f"Azure {operation} failed unexpectedly: {exc}")


def _combine(values: List[float], aggregation: str) -> Optional[float]:
    if not values:
        return None
    if aggregation == "average":
        return sum(values) / len(values)
    if aggregation == "maximum":
        return max(values)
    if aggregation == "minimum":
        return min(values)
    return float(sum(values))


def _minutes(value: Any) -> int:
    if isinstance(value, timedelta):
        return int(value.total_seconds() // 60)
    return 0


class AzureAdapter(BaseAdapter):
    """
    Azure control-plane adapter using the official async Azure SDK.
    Clients are created lazily and share one credential.
    """

    def __init__(self, credentials: AzureCredentials):
        self.credentials = credentials
        self._credential: ClientSecretCredential | DefaultAzureCredential | None = None
        self._resource_client: ResourceManagementClient | None = None
        self._compute_client: ComputeManagementClient | None = None
        self._monitor_client: MonitorManagementClient | None = None
        self._policy_client: PolicyClient | None = None
        self._metrics_client: MetricsQueryClient | None = None
        self._logs_client: LogsQueryClient | None = None

    @property
    def subscription_id(self) -> str:
        return self.credentials.subscription_id

    def _get_credentials(self) -> ClientSecretCredential | DefaultAzureCredential:
        if not self._credential:
            if self.credentials.uses_client_secret:
                if not (
                    self.credentials.tenant_id
                    and self.credentials.client_id
                    and self.credentials.client_secret
                ):
                    raise ConfigurationError(
                        "Azure tenant_id, client_id and client_secret are required for client secret auth"
                    )
                self._credential = ClientSecretCredential(
                    tenant_id=self.credentials.tenant_id,
                    client_id=self.credentials.client_id,
                    client_secret=self.credentials.client_secret.get_secret_value(),
                )
            else:
                self._credential = DefaultAzureCredential()
        return self._credential

    @property
    def credential(self) -> ClientSecretCredential | DefaultAzureCredential:
        """Shared token credential, also used for Microsoft Graph."""
        return self._get_credentials()

    def _get_resource_client(self) -> ResourceManagementClient:
        if not self._resource_client:
            self._resource_client = ResourceManagementClient(
                credential=self._get_credentials(), subscription_id=self.subscription_id
            )
        return self._resource_client

    def _get_compute_client(self) -> ComputeManagementClient:
        if not self._compute_client:
            self._compute_client = ComputeManagementClient(
                credential=self._get_credentials(), subscription_id=self.subscription_id
            )
        return self._compute_client

    def _get_monitor_client(self) -> MonitorManagementClient:
        if not self._monitor_client:
            self._monitor_client = MonitorManagementClient(
                credential=self._get_credentials(), subscription_id=self.subscription_id
            )
        return self._monitor_client

    def _get_policy_client(self) -> PolicyClient:
        if not self._policy_client:
            self._policy_client = PolicyClient(
                credential=self._get_credentials(), subscription_id=self.subscription_id
            )
        return self._policy_client

    def _get_metrics_client(self) -> MetricsQueryClient:
        if not self._metrics_client:
            self._metrics_client = MetricsQueryClient(self._get_credentials())
        return self._metrics_client

    def _get_logs_client(self) -> LogsQueryClient:
        if not self._logs_client:
            self._logs_client = LogsQueryClient(self._get_credentials())
        return self._logs_client

    async def verify_connection(self) -> bool:
        """
        Verify credentials by attempting to list resource groups.
        """
        self._clear_last_error()
        try:
            client = self._get_resource_client()
            async for _ in client.resource_groups.list():
                break
            return True
        except Exception as e:
            self._set_last_error(str(translate_azure_error(e, "connection check")))
            logger.error(
                "azure_verify_failed",
                error=self.last_error,
                subscription_id=self.subscription_id,
            )
            return False

    async def list_resources(self, resource_filter: ResourceFilter) -> AsyncIterator[ResourceDescriptor]:
        odata = None
        if resource_filter.resource_type:
            odata = f"resourceType eq {odata_string(resource_filter.resource_type)}"
        try:
            client = self._get_resource_client()
            if resource_filter.resource_group:
                pager = client.resources.list_by_resource_group(
                    resource_filter.resource_group, filter=odata
                )
            else:
                pager = client.resources.list(filter=odata)
            async for resource in pager:
                yield ResourceDescriptor.from_arm(resource.id, resource.name, resource.type)
        except Exception as e:
            logger.error("azure_resource_listing_failed", error=str(e))
            raise translate_azure_error(e, "resource listing") from e

    async def list_virtual_machines(self, resource_group: Optional[str] = None) -> AsyncIterator[Dict[str, Any]]:
        try:
            client = self._get_compute_client()
            if resource_group:
                pager = client.virtual_machines.list(resource_group)
            else:
                pager = client.virtual_machines.list_all()
            async for vm in pager:
                hardware = getattr(vm, "hardware_profile", None)
                storage = getattr(vm, "storage_profile", None)
                os_disk = getattr(storage, "os_disk", None)
                yield {
                    "id": vm.id,
                    "name": vm.name,
                    "resource_group": resource_group_from_id(vm.id),
                    "location": vm.location,
                    "size": getattr(hardware, "vm_size", None),
                    "os_type": str(getattr(os_disk, "os_type", "") or "") or None,
                    "provisioning_state": getattr(vm, "provisioning_state", None),
                    "tags": vm.tags or {},
                }
        except Exception as e:
            logger.error("azure_vm_listing_failed", error=str(e))
            raise translate_azure_error(e, "virtual machine listing") from e

    async def get_power_state(self, resource_group: str, vm_name: str) -> Optional[str]:
        try:
            client = self._get_compute_client()
            view = await client.virtual_machines.instance_view(resource_group, vm_name)
        except Exception as e:
            raise translate_azure_error(e, f"instance view of {vm_name}") from e
        for status in getattr(view, "statuses", None) or []:
            code = str(getattr(status, "code", "") or "")
            if code.startswith("PowerState/"):
                return code.split("/", 1)[1]
        return None

    async def get_metric(
        self,
        resource_id: str,
        metric_name: str,
        aggregation: str,
        window: timedelta,
    ) -> Optional[float]:
        agg_key = aggregation.strip().lower()
        agg_type = _AGGREGATIONS.get(agg_key)
        if agg_type is None:
            raise ValueError(f"Unsupported metric aggregation: {aggregation}")
        try:
            client = self._get_metrics_client()
            response = await client.query_resource(
                resource_id,
                metric_names=[metric_name],
                timespan=window,
                aggregations=[agg_type],
            )
        except Exception as e:
            raise translate_azure_error(e, f"metric query for {resource_id}") from e

        values: List[float] = []
        for metric in response.metrics or []:
            for series in metric.timeseries or []:
                for point in series.data or []:
                    value = getattr(point, agg_key, None)
                    if value is not None:
                        values.append(float(value))
        return _combine(values, agg_key)

    async def query_log(
        self, workspace_id: str, query: str, timespan: timedelta
    ) -> List[Dict[str, Any]]:
        try:
            client = self._get_logs_client()
            result = await client.query_workspace(workspace_id, query, timespan=timespan)
        except Exception as e:
            raise translate_azure_error(e, "log analytics query") from e

        if result.status == LogsQueryStatus.PARTIAL:
            logger.warning(
                "log_query_partial_result",
                workspace_id=workspace_id,
                error=str(result.partial_error),
            )
            tables = result.partial_data
        elif result.status == LogsQueryStatus.SUCCESS:
            tables = result.tables
        else:
            raise TransportError(f"Log analytics query failed with status {result.status}")

        records: List[Dict[str, Any]] = []
        for table in tables or []:
            columns = [getattr(c, "name", c) for c in table.columns]
            for row in table.rows:
                records.append(dict(zip(columns, list(row))))
        return records

    async def get_action_group_id(self, name: str, resource_group: str) -> Optional[str]:
        try:
            group = await self._get_monitor_client().action_groups.get(resource_group, name)
        except ResourceNotFoundError:
            return None
        except Exception as e:
            raise translate_azure_error(e, f"action group lookup {name}") from e
        return group.id

    async def get_alert_rule(self, name: str, resource_group: str) -> Optional[AlertRule]:
        try:
            rule = await self._get_monitor_client().metric_alerts.get(resource_group, name)
        except ResourceNotFoundError:
            return None
        except Exception as e:
            raise translate_azure_error(e, f"alert rule lookup {name}") from e
        return self._to_alert_rule(rule, resource_group)

    def _to_alert_rule(self, rule: Any, resource_group: str) -> AlertRule:
        criteria = getattr(rule, "criteria", None)
        all_of = list(getattr(criteria, "all_of", None) or [])
        first = all_of[0] if all_of else None
        actions = list(getattr(rule, "actions", None) or [])
        scopes = list(getattr(rule, "scopes", None) or [])
        spec = AlertRuleSpec(
            scope_id=scopes[0] if scopes else "",
            metric_name=getattr(first, "metric_name", "") or "",
            metric_namespace=getattr(first, "metric_namespace", "") or "",
            threshold=float(getattr(first, "threshold", 0.0) or 0.0),
            severity=int(getattr(rule, "severity", 0) or 0),
            window_minutes=_minutes(getattr(rule, "window_size", None)),
            frequency_minutes=_minutes(getattr(rule, "evaluation_frequency", None)),
            action_group_id=getattr(actions[0], "action_group_id", None) if actions else None,
            operator=str(getattr(first, "operator", "") or ""),
            time_aggregation=str(getattr(first, "time_aggregation", "") or ""),
            description=getattr(rule, "description", "") or "",
            enabled=bool(getattr(rule, "enabled", True)),
            tags=dict(getattr(rule, "tags", None) or {}),
        )
        return AlertRule(id=rule.id, name=rule.name, resource_group=resource_group, spec=spec)

    async def create_alert_rule(self, name: str, resource_group: str, spec: AlertRuleSpec) -> None:
        criteria = MetricAlertSingleResourceMultipleMetricCriteria(
            all_of=[
                MetricCriteria(
                    name=_METRIC_ALERT_CRITERIA_NAME,
                    metric_name=spec.metric_name,
                    metric_namespace=spec.metric_namespace,
                    operator=spec.operator,
                    threshold=spec.threshold,
                    time_aggregation=spec.time_aggregation,
                )
            ]
        )
        actions = (
            [MetricAlertAction(action_group_id=spec.action_group_id)]
            if spec.action_group_id
            else []
        )
        resource = MetricAlertResource(
            location="global",
            description=spec.description,
            severity=spec.severity,
            enabled=spec.enabled,
            scopes=[spec.scope_id],
            evaluation_frequency=timedelta(minutes=spec.frequency_minutes),
            window_size=timedelta(minutes=spec.window_minutes),
            criteria=criteria,
            actions=actions,
            auto_mitigate=True,
            tags=spec.tags or None,
        )
        try:
            await self._get_monitor_client().metric_alerts.create_or_update(
                resource_group, name, resource
            )
        except Exception as e:
            raise translate_azure_error(e, f"alert rule create {name}") from e

    async def get_policy_definition(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            definition = await self._get_policy_client().policy_definitions.get(name)
        except ResourceNotFoundError:
            return None
        except Exception as e:
            raise translate_azure_error(e, f"policy definition lookup {name}") from e
        return {
            "id": definition.id,
            "name": definition.name,
            "display_name": definition.display_name,
            "description": definition.description,
            "mode": definition.mode,
            "policy_rule": definition.policy_rule,
            "parameters": self._plain_parameters(definition.parameters),
            "metadata": definition.metadata,
        }

    @staticmethod
    def _plain_parameters(parameters: Any) -> Dict[str, Any]:
        if not parameters:
            return {}
        plain: Dict[str, Any] = {}
        for key, value in parameters.items():
            plain[key] = value.serialize() if hasattr(value, "serialize") else value
        return plain

    async def create_policy_definition(self, name: str, definition: Dict[str, Any]) -> None:
        model = PolicyDefinition(
            policy_type="Custom",
            mode=definition.get("mode", "All"),
            display_name=definition.get("display_name"),
            description=definition.get("description"),
            policy_rule=definition.get("policy_rule"),
            parameters=definition.get("parameters") or None,
            metadata=definition.get("metadata") or None,
        )
        try:
            await self._get_policy_client().policy_definitions.create_or_update(name, model)
        except Exception as e:
            raise translate_azure_error(e, f"policy definition create {name}") from e

    async def close(self) -> None:
        for client in (
            self._resource_client,
            self._compute_client,
            self._monitor_client,
            self._policy_client,
            self._metrics_client,
            self._logs_client,
            self._credential,
        ):
            if client is not None:
                await client.close()
