"""
CPU alert-rule provisioning.

One static-threshold metric alert per VM, named ``<prefix><vmName>``, bound to
an existing action group. Re-running against unchanged VMs is a no-op; a rule
that drifted from the requested settings is updated in place.
"""

import asyncio
from dataclasses import replace
from typing import Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cloudrecon.modules.reconciliation.domain.models import (
    ActionRequest,
    ResourceDescriptor,
    ResourceType,
)
from cloudrecon.modules.reconciliation.domain.reconciler import BaseReconciler
from cloudrecon.shared.adapters.base import AlertRule, AlertRuleSpec, BaseAdapter
from cloudrecon.shared.core.exceptions import ValidationError

logger = structlog.get_logger()

ALLOWED_WINDOW_MINUTES = (1, 5, 15, 30, 60, 360, 720, 1440)
ALLOWED_FREQUENCY_MINUTES = (1, 5, 15, 30, 60)
_FORBIDDEN_NAME_CHARS = set('<>*%&:\\?+/')


class CpuAlertConfig(BaseModel):
    """Desired settings shared by every CPU alert rule of a run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    action_group_name: str = Field(..., min_length=1)
    action_group_resource_group: str = Field(..., min_length=1)
    alert_resource_group: Optional[str] = Field(
        default=None, description="Resource group for rules; defaults to the VM's group."
    )
    prefix: str = Field(default="CPUAlert-", max_length=64)
    threshold: float = Field(default=80.0, gt=0, le=100)
    severity: int = Field(default=2, ge=0, le=4)
    window_minutes: int = 5
    frequency_minutes: int = 1
    description: str = Field(default="Average CPU above threshold", max_length=2048)
    tags: Dict[str, str] = Field(default_factory=dict)
    metric_name: str = "Percentage CPU"
    metric_namespace: str = "Microsoft.Compute/virtualMachines"

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        bad = sorted(set(v) & _FORBIDDEN_NAME_CHARS)
        if bad:
            raise ValueError(f"prefix contains characters not allowed in alert names: {''.join(bad)}")
        return v

    @field_validator("window_minutes")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v not in ALLOWED_WINDOW_MINUTES:
            raise ValueError(f"window_minutes must be one of {ALLOWED_WINDOW_MINUTES}")
        return v

    @field_validator("frequency_minutes")
    @classmethod
    def validate_frequency(cls, v: int) -> int:
        if v not in ALLOWED_FREQUENCY_MINUTES:
            raise ValueError(f"frequency_minutes must be one of {ALLOWED_FREQUENCY_MINUTES}")
        return v

    @model_validator(mode="after")
    def validate_frequency_within_window(self) -> "CpuAlertConfig":
        if self.frequency_minutes > self.window_minutes:
            raise ValueError("frequency_minutes cannot exceed window_minutes")
        return self

    def rule_name(self, resource_name: str) -> str:
        return f"{self.prefix}{resource_name}"


def _same_id(left: Optional[str], right: Optional[str]) -> bool:
    return (left or "").strip().lower() == (right or "").strip().lower()


class CpuAlertReconciler(BaseReconciler):
    action_name = "cpu_alert"

    def __init__(self, adapter: BaseAdapter, config: CpuAlertConfig, *, dry_run: bool = False):
        super().__init__(adapter, config, dry_run=dry_run)
        self._action_group_id: Optional[str] = None
        self._action_group_resolved = False
        self._lock = asyncio.Lock()

    async def _resolve_action_group(self) -> Optional[str]:
        async with self._lock:
            if not self._action_group_resolved:
                self._action_group_id = await self.adapter.get_action_group_id(
                    self.config.action_group_name, self.config.action_group_resource_group
                )
                self._action_group_resolved = True
                if self._action_group_id is None:
                    logger.warning(
                        "action_group_not_found",
                        name=self.config.action_group_name,
                        resource_group=self.config.action_group_resource_group,
                    )
        return self._action_group_id

    def build_request(self, resource: ResourceDescriptor, config: CpuAlertConfig) -> ActionRequest:
        if resource.type != ResourceType.VIRTUAL_MACHINE:
            raise ValidationError(f"{resource.name} is not a virtual machine ({resource.type.value})")
        spec = AlertRuleSpec(
            scope_id=resource.id,
            metric_name=config.metric_name,
            metric_namespace=config.metric_namespace,
            threshold=config.threshold,
            severity=config.severity,
            window_minutes=config.window_minutes,
            frequency_minutes=config.frequency_minutes,
            description=config.description,
            tags=dict(config.tags),
        )
        return ActionRequest(target=resource, desired_state=spec)

    def key_for(self, request: ActionRequest) -> str:
        return self.config.rule_name(request.target.name)

    def _rule_resource_group(self, request: ActionRequest) -> str:
        return self.config.alert_resource_group or request.target.resource_group

    async def fetch_existing(self, request: ActionRequest) -> Optional[AlertRule]:
        await self._resolve_action_group()
        return await self.adapter.get_alert_rule(
            self.key_for(request), self._rule_resource_group(request)
        )

    def is_satisfied(self, existing: AlertRule, request: ActionRequest) -> bool:
        desired: AlertRuleSpec = request.desired_state
        current = existing.spec
        return (
            self._action_group_id is not None
            and _same_id(current.action_group_id, self._action_group_id)
            and _same_id(current.scope_id, desired.scope_id)
            and current.metric_name.lower() == desired.metric_name.lower()
            and current.operator.lower() == desired.operator.lower()
            and current.time_aggregation.lower() == desired.time_aggregation.lower()
            and float(current.threshold) == float(desired.threshold)
            and current.severity == desired.severity
            and current.window_minutes == desired.window_minutes
            and current.frequency_minutes == desired.frequency_minutes
            and current.enabled == desired.enabled
        )

    async def check_prerequisites(self, request: ActionRequest) -> Optional[str]:
        if await self._resolve_action_group() is None:
            return (
                f"action group {self.config.action_group_name} not found in "
                f"{self.config.action_group_resource_group}"
            )
        return None

    async def apply(self, request: ActionRequest, existing: Optional[AlertRule]) -> str:
        name = self.key_for(request)
        spec = replace(request.desired_state, action_group_id=self._action_group_id)
        await self.adapter.create_alert_rule(name, self._rule_resource_group(request), spec)
        if existing is None:
            return f"created alert rule {name} (threshold {spec.threshold:g}%)"
        return (
            f"updated alert rule {name} "
            f"(threshold {existing.spec.threshold:g}% -> {spec.threshold:g}%)"
        )
