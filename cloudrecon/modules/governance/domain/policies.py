"""
Custom Azure Policy definitions.

Definitions come from a JSON file (a single object, a list, or ARM-style
objects with a ``properties`` block) or are generated from tag names as
"deny when tag is missing" rules. Each definition is reconciled by name at
subscription scope.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from cloudrecon.modules.reconciliation.domain.models import (
    ActionRequest,
    ResourceDescriptor,
    ResourceType,
)
from cloudrecon.modules.reconciliation.domain.reconciler import BaseReconciler
from cloudrecon.shared.adapters.base import BaseAdapter
from cloudrecon.shared.core.exceptions import ValidationError

logger = structlog.get_logger()

POLICY_MODES = ("All", "Indexed")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-]{0,63}$")
_TAG_RE = re.compile(r"^[^<>%&\\?/]{1,512}$")


class PolicyDefinitionSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    display_name: str = Field(..., min_length=1, max_length=128)
    description: str = Field(default="", max_length=512)
    mode: str = "All"
    policy_rule: Dict[str, Any]
    parameters: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError(f"invalid policy definition name: {v!r}")
        return v

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        for mode in POLICY_MODES:
            if mode.lower() == v.strip().lower():
                return mode
        raise ValueError(f"mode must be one of {POLICY_MODES}")

    @field_validator("policy_rule")
    @classmethod
    def validate_rule(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if "if" not in v or "then" not in v:
            raise ValueError("policy_rule must contain 'if' and 'then'")
        return v

    def as_definition(self) -> Dict[str, Any]:
        return {
            "display_name": self.display_name,
            "description": self.description,
            "mode": self.mode,
            "policy_rule": self.policy_rule,
            "parameters": self.parameters,
            "metadata": self.metadata,
        }

    def descriptor(self, subscription_id: str) -> ResourceDescriptor:
        return ResourceDescriptor(
            id=(
                f"/subscriptions/{subscription_id}/providers/"
                f"Microsoft.Authorization/policyDefinitions/{self.name}"
            ),
            name=self.name,
            resource_group="",
            type=ResourceType.POLICY_DEFINITION,
        )


def require_tag_definition(tag: str, prefix: str = "require-tag-") -> PolicyDefinitionSpec:
    """Deny creation of resources that lack ``tag``."""
    tag = tag.strip()
    if not _TAG_RE.match(tag):
        raise ValidationError(f"invalid tag name: {tag!r}")
    slug = re.sub(r"[^A-Za-z0-9._\-]", "-", tag).strip("-").lower() or "tag"
    try:
        return PolicyDefinitionSpec(
            name=f"{prefix}{slug}"[:64],
            display_name=f"Require tag '{tag}' on resources",
            description=f"Denies creation of resources that do not carry the '{tag}' tag.",
            mode="Indexed",
            policy_rule={
                "if": {"field": f"tags['{tag}']", "exists": "false"},
                "then": {"effect": "deny"},
            },
            metadata={"category": "Tags", "createdBy": "cloudrecon"},
        )
    except PydanticValidationError as e:
        raise ValidationError(f"tag {tag!r}: {e.errors()[0]['msg']}") from e


def _from_document(item: Any, source: str) -> PolicyDefinitionSpec:
    if not isinstance(item, dict):
        raise ValidationError(f"{source}: policy definition must be an object")
    data = dict(item)
    props = data.pop("properties", None)
    if isinstance(props, dict):
        data.update(props)
    aliases = {"displayName": "display_name", "policyRule": "policy_rule"}
    for src, dst in aliases.items():
        if src in data:
            data[dst] = data.pop(src)
    # ARM exports carry read-only fields
    for key in ("id", "type", "policyType", "policy_type", "systemData", "versions", "version"):
        data.pop(key, None)
    try:
        return PolicyDefinitionSpec(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"{source}: {e.errors()[0]['msg']}") from e


def load_policy_file(path: Path) -> List[PolicyDefinitionSpec]:
    if not path.is_file():
        raise ValidationError(f"policy file not found: {path}")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON: {e}") from e
    items = document if isinstance(document, list) else [document]
    specs = [_from_document(item, f"{path}[{idx}]") for idx, item in enumerate(items)]
    names = [s.name.lower() for s in specs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValidationError(f"duplicate policy definition names: {', '.join(duplicates)}")
    return specs


def _normalized(value: Any) -> str:
    return json.dumps(value or {}, sort_keys=True, default=str)


class PolicyDefinitionReconciler(BaseReconciler):
    action_name = "policy_definition"

    def __init__(
        self,
        adapter: BaseAdapter,
        definitions: Sequence[PolicyDefinitionSpec],
        *,
        dry_run: bool = False,
    ):
        super().__init__(adapter, None, dry_run=dry_run)
        self._definitions = {d.name.lower(): d for d in definitions}

    def descriptors(self) -> Iterable[ResourceDescriptor]:
        return [d.descriptor(self.adapter.subscription_id) for d in self._definitions.values()]

    def build_request(self, resource: ResourceDescriptor, config: Any) -> ActionRequest:
        spec = self._definitions.get(resource.name.lower())
        if spec is None:
            raise ValidationError(f"no policy definition named {resource.name}")
        return ActionRequest(target=resource, desired_state=spec)

    async def fetch_existing(self, request: ActionRequest) -> Optional[Dict[str, Any]]:
        return await self.adapter.get_policy_definition(request.desired_state.name)

    def is_satisfied(self, existing: Dict[str, Any], request: ActionRequest) -> bool:
        desired: PolicyDefinitionSpec = request.desired_state
        return (
            str(existing.get("mode") or "").lower() == desired.mode.lower()
            and (existing.get("display_name") or "") == desired.display_name
            and (existing.get("description") or "") == desired.description
            and _normalized(existing.get("policy_rule")) == _normalized(desired.policy_rule)
            and _normalized(existing.get("parameters")) == _normalized(desired.parameters)
        )

    async def apply(self, request: ActionRequest, existing: Optional[Dict[str, Any]]) -> str:
        spec: PolicyDefinitionSpec = request.desired_state
        await self.adapter.create_policy_definition(spec.name, spec.as_definition())
        verb = "updated" if existing is not None else "created"
        return f"{verb} policy definition {spec.name}"
