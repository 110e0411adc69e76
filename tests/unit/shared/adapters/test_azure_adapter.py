from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.monitor.query import LogsQueryStatus
from pydantic import SecretStr

from cloudrecon.modules.reconciliation.domain.models import ResourceFilter, ResourceType
from cloudrecon.shared.adapters.azure import AzureAdapter, translate_azure_error
from cloudrecon.shared.adapters.base import AlertRuleSpec
from cloudrecon.shared.core.credentials import AzureCredentials
from cloudrecon.shared.core.exceptions import AuthenticationError, TransportError

VM_ID = "/subscriptions/sub/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/vm1"


def _adapter():
    return AzureAdapter(
        AzureCredentials(
            subscription_id="sub",
            tenant_id="tenant",
            client_id="client",
            client_secret=SecretStr("secret"),
        )
    )


def _pager(*items, error=None):
    async def gen(*args, **kwargs):
        for item in items:
            yield item
        if error is not None:
            raise error

    return gen


@pytest.mark.asyncio
async def test_verify_connection_success():
    adapter = _adapter()
    client = MagicMock()
    client.resource_groups.list = _pager(SimpleNamespace(name="rg-app"))

    with patch.object(adapter, "_get_resource_client", return_value=client):
        assert await adapter.verify_connection() is True
    assert adapter.last_error is None


@pytest.mark.asyncio
async def test_verify_connection_failure_sets_last_error():
    adapter = _adapter()
    client = MagicMock()
    client.resource_groups.list = _pager(error=ClientAuthenticationError("AADSTS7000215 invalid secret"))

    with patch.object(adapter, "_get_resource_client", return_value=client):
        assert await adapter.verify_connection() is False
    assert "AADSTS7000215" in adapter.last_error


@pytest.mark.asyncio
async def test_list_resources_maps_descriptors_and_filters():
    adapter = _adapter()
    client = MagicMock()
    client.resources.list = MagicMock(
        side_effect=_pager(
            SimpleNamespace(id=VM_ID, name="vm1", type="Microsoft.Compute/virtualMachines"),
        )
    )

    with patch.object(adapter, "_get_resource_client", return_value=client):
        items = [
            r
            async for r in adapter.list_resources(
                ResourceFilter(resource_type="Microsoft.Compute/virtualMachines")
            )
        ]

    assert items[0].name == "vm1"
    assert items[0].resource_group == "rg-app"
    assert items[0].type is ResourceType.VIRTUAL_MACHINE
    client.resources.list.assert_called_once_with(
        filter="resourceType eq 'Microsoft.Compute/virtualMachines'"
    )


@pytest.mark.asyncio
async def test_list_resources_by_group():
    adapter = _adapter()
    client = MagicMock()
    client.resources.list_by_resource_group = MagicMock(side_effect=_pager())

    with patch.object(adapter, "_get_resource_client", return_value=client):
        assert [r async for r in adapter.list_resources(ResourceFilter(resource_group="rg-app"))] == []
    client.resources.list_by_resource_group.assert_called_once_with("rg-app", filter=None)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,expected",
    [
        (HttpResponseError(message="503 Service Unavailable"), TransportError),
        (ClientAuthenticationError("token expired"), AuthenticationError),
    ],
)
async def test_list_resources_errors_are_translated(error, expected):
    adapter = _adapter()
    client = MagicMock()
    client.resources.list = MagicMock(side_effect=_pager(error=error))

    with patch.object(adapter, "_get_resource_client", return_value=client):
        with pytest.raises(expected):
            async for _ in adapter.list_resources(ResourceFilter()):
                pass


@pytest.mark.asyncio
async def test_list_virtual_machines_and_power_state():
    adapter = _adapter()
    client = MagicMock()
    vm = SimpleNamespace(
        id=VM_ID,
        name="vm1",
        location="westeurope",
        hardware_profile=SimpleNamespace(vm_size="Standard_D2s_v5"),
        storage_profile=SimpleNamespace(os_disk=SimpleNamespace(os_type="Linux")),
        provisioning_state="Succeeded",
        tags=None,
    )
    client.virtual_machines.list_all = MagicMock(side_effect=_pager(vm))
    client.virtual_machines.instance_view = AsyncMock(
        return_value=SimpleNamespace(
            statuses=[
                SimpleNamespace(code="ProvisioningState/succeeded"),
                SimpleNamespace(code="PowerState/running"),
            ]
        )
    )

    with patch.object(adapter, "_get_compute_client", return_value=client):
        vms = [v async for v in adapter.list_virtual_machines()]
        state = await adapter.get_power_state("rg-app", "vm1")

    assert vms[0]["size"] == "Standard_D2s_v5"
    assert vms[0]["os_type"] == "Linux"
    assert vms[0]["resource_group"] == "rg-app"
    assert vms[0]["tags"] == {}
    assert state == "running"


@pytest.mark.asyncio
async def test_get_metric_averages_points():
    adapter = _adapter()
    client = MagicMock()
    points = [SimpleNamespace(average=10.0), SimpleNamespace(average=None), SimpleNamespace(average=30.0)]
    client.query_resource = AsyncMock(
        return_value=SimpleNamespace(
            metrics=[SimpleNamespace(timeseries=[SimpleNamespace(data=points)])]
        )
    )

    with patch.object(adapter, "_get_metrics_client", return_value=client):
        value = await adapter.get_metric(VM_ID, "Percentage CPU", "Average", timedelta(hours=1))

    assert value == 20.0
    kwargs = client.query_resource.await_args.kwargs
    assert kwargs["metric_names"] == ["Percentage CPU"]
    assert kwargs["timespan"] == timedelta(hours=1)


@pytest.mark.asyncio
async def test_get_metric_without_data_returns_none():
    adapter = _adapter()
    client = MagicMock()
    client.query_resource = AsyncMock(return_value=SimpleNamespace(metrics=[]))
    with patch.object(adapter, "_get_metrics_client", return_value=client):
        assert await adapter.get_metric(VM_ID, "Percentage CPU", "maximum", timedelta(hours=1)) is None


@pytest.mark.asyncio
async def test_query_log_success_and_partial():
    adapter = _adapter()
    client = MagicMock()
    table = SimpleNamespace(columns=["DeletedCount"], rows=[[12]])
    client.query_workspace = AsyncMock(
        side_effect=[
            SimpleNamespace(status=LogsQueryStatus.SUCCESS, tables=[table]),
            SimpleNamespace(
                status=LogsQueryStatus.PARTIAL, partial_data=[table], partial_error="row limit"
            ),
        ]
    )

    with patch.object(adapter, "_get_logs_client", return_value=client):
        full = await adapter.query_log("ws", "AzureActivity | count", timedelta(hours=24))
        partial = await adapter.query_log("ws", "AzureActivity | count", timedelta(hours=24))

    assert full == [{"DeletedCount": 12}]
    assert partial == [{"DeletedCount": 12}]
    client.query_workspace.assert_awaited_with(
        "ws", "AzureActivity | count", timespan=timedelta(hours=24)
    )


@pytest.mark.asyncio
async def test_query_log_failure():
    adapter = _adapter()
    client = MagicMock()
    client.query_workspace = AsyncMock(side_effect=HttpResponseError(message="workspace not found"))
    with patch.object(adapter, "_get_logs_client", return_value=client):
        with pytest.raises(TransportError):
            await adapter.query_log("ws", "AzureActivity", timedelta(hours=1))


@pytest.mark.asyncio
async def test_get_alert_rule_not_found_returns_none():
    adapter = _adapter()
    client = MagicMock()
    client.metric_alerts.get = AsyncMock(side_effect=ResourceNotFoundError("missing"))
    with patch.object(adapter, "_get_monitor_client", return_value=client):
        assert await adapter.get_alert_rule("CPUAlert-vm1", "rg-app") is None


@pytest.mark.asyncio
async def test_get_alert_rule_maps_sdk_model():
    adapter = _adapter()
    client = MagicMock()
    client.metric_alerts.get = AsyncMock(
        return_value=SimpleNamespace(
            id="/rules/CPUAlert-vm1",
            name="CPUAlert-vm1",
            scopes=[VM_ID],
            severity=2,
            enabled=True,
            description="cpu",
            window_size=timedelta(minutes=15),
            evaluation_frequency=timedelta(minutes=5),
            criteria=SimpleNamespace(
                all_of=[
                    SimpleNamespace(
                        metric_name="Percentage CPU",
                        metric_namespace="Microsoft.Compute/virtualMachines",
                        threshold=85,
                        operator="GreaterThan",
                        time_aggregation="Average",
                    )
                ]
            ),
            actions=[SimpleNamespace(action_group_id="/ag/ops")],
            tags={"owner": "sre"},
        )
    )

    with patch.object(adapter, "_get_monitor_client", return_value=client):
        rule = await adapter.get_alert_rule("CPUAlert-vm1", "rg-app")

    assert rule.spec.threshold == 85.0
    assert rule.spec.window_minutes == 15
    assert rule.spec.frequency_minutes == 5
    assert rule.spec.action_group_id == "/ag/ops"
    assert rule.spec.scope_id == VM_ID


@pytest.mark.asyncio
async def test_create_alert_rule_builds_metric_alert():
    adapter = _adapter()
    client = MagicMock()
    client.metric_alerts.create_or_update = AsyncMock()
    spec = AlertRuleSpec(
        scope_id=VM_ID,
        metric_name="Percentage CPU",
        metric_namespace="Microsoft.Compute/virtualMachines",
        threshold=80.0,
        severity=3,
        window_minutes=5,
        frequency_minutes=1,
        action_group_id="/ag/ops",
        tags={"owner": "sre"},
    )

    with patch.object(adapter, "_get_monitor_client", return_value=client):
        await adapter.create_alert_rule("CPUAlert-vm1", "rg-app", spec)

    resource_group, name, resource = client.metric_alerts.create_or_update.await_args.args
    assert (resource_group, name) == ("rg-app", "CPUAlert-vm1")
    assert resource.location == "global"
    assert resource.severity == 3
    assert resource.scopes == [VM_ID]
    assert resource.window_size == timedelta(minutes=5)
    assert resource.evaluation_frequency == timedelta(minutes=1)
    assert resource.actions[0].action_group_id == "/ag/ops"
    assert resource.criteria.all_of[0].threshold == 80.0


@pytest.mark.asyncio
async def test_create_alert_rule_failure_is_transport_error():
    adapter = _adapter()
    client = MagicMock()
    client.metric_alerts.create_or_update = AsyncMock(side_effect=HttpResponseError(message="Conflict"))
    spec = AlertRuleSpec(VM_ID, "Percentage CPU", "Microsoft.Compute/virtualMachines", 80.0, 2, 5, 1)
    with patch.object(adapter, "_get_monitor_client", return_value=client):
        with pytest.raises(TransportError):
            await adapter.create_alert_rule("CPUAlert-vm1", "rg-app", spec)


@pytest.mark.asyncio
async def test_policy_definition_lookup_and_create():
    adapter = _adapter()
    client = MagicMock()
    client.policy_definitions.get = AsyncMock(side_effect=ResourceNotFoundError("missing"))
    client.policy_definitions.create_or_update = AsyncMock()

    with patch.object(adapter, "_get_policy_client", return_value=client):
        assert await adapter.get_policy_definition("require-tag-owner") is None
        await adapter.create_policy_definition(
            "require-tag-owner",
            {"display_name": "Require owner", "mode": "Indexed", "policy_rule": {"if": {}, "then": {}}},
        )

    name, model = client.policy_definitions.create_or_update.await_args.args
    assert name == "require-tag-owner"
    assert model.policy_type == "Custom"
    assert model.mode == "Indexed"


@pytest.mark.asyncio
async def test_close_closes_created_clients():
    adapter = _adapter()
    adapter._resource_client = MagicMock(close=AsyncMock())
    adapter._credential = MagicMock(close=AsyncMock())
    await adapter.close()
    adapter._resource_client.close.assert_awaited_once()
    adapter._credential.close.assert_awaited_once()


def test_translate_azure_error():
    assert isinstance(translate_azure_error(ClientAuthenticationError("x"), "op"), AuthenticationError)
    assert isinstance(translate_azure_error(HttpResponseError(message="x"), "op"), TransportError)
    assert isinstance(translate_azure_error(RuntimeError("x"), "op"), TransportError)
    original = TransportError("already translated")
    assert translate_azure_error(original, "op") is original
