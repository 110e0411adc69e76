#!/usr/bin/env python3
"""
cloudrecon command line.

Exit codes:
  0  completed (per-resource failures are reported, not fatal)
  1  setup error: configuration, authentication or missing SDK module
  2  invalid parameter
  3  enumeration or query transport failure
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from cloudrecon.modules.alerts.domain.cpu_alerts import (
    ALLOWED_FREQUENCY_MINUTES,
    ALLOWED_WINDOW_MINUTES,
    CpuAlertConfig,
    CpuAlertReconciler,
)
from cloudrecon.modules.audit.domain.deletions import DeletionAuditConfig, DeletionAuditor
from cloudrecon.modules.audit.domain.logins import LoginAuditConfig, audit_logins
from cloudrecon.modules.governance.domain.policies import (
    PolicyDefinitionReconciler,
    PolicyDefinitionSpec,
    load_policy_file,
    require_tag_definition,
)
from cloudrecon.modules.identity.domain.users import UserProvisioningReconciler, load_users_csv
from cloudrecon.modules.inventory.domain.metrics import AGGREGATIONS, MetricsQueryConfig, collect_metrics
from cloudrecon.modules.inventory.domain.vms import collect_vm_inventory
from cloudrecon.modules.notifications.domain.email_service import EmailMessage, EmailService
from cloudrecon.modules.reconciliation.domain.enumerator import ResourceEnumerator
from cloudrecon.modules.reconciliation.domain.models import ResourceFilter, ResourceType, RunSummary
from cloudrecon.shared.adapters.base import BaseAdapter
from cloudrecon.shared.adapters.graph import GraphClient
from cloudrecon.shared.core.config import Settings, get_settings
from cloudrecon.shared.core.exceptions import (
    AuthenticationError,
    CloudReconError,
    SetupError,
    TransportError,
    ValidationError,
)
from cloudrecon.shared.core.logging import setup_logging
from cloudrecon.shared.core.runtime_dependencies import validate_runtime_dependencies

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_SETUP_ERROR = 1
EXIT_VALIDATION_ERROR = 2
EXIT_TRANSPORT_ERROR = 3

MAX_CONCURRENCY_LIMIT = 32


def _tag(value: str) -> tuple[str, str]:
    key, sep, tag_value = value.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return key.strip(), tag_value.strip()


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--subscription-id",
        default=None,
        help="Target subscription (defaults to AZURE_SUBSCRIPTION_ID).",
    )
    common.add_argument(
        "--dry-run",
        action="store_true",
        help="Report intended changes without performing any mutating call.",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Debug-level console logging.")
    common.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help=f"Resources reconciled in parallel (1..{MAX_CONCURRENCY_LIMIT}, default MAX_CONCURRENCY).",
    )
    common.add_argument("--output", choices=["text", "json"], default="text")

    parser = argparse.ArgumentParser(
        prog="cloudrecon",
        description="Idempotent Azure provisioning, auditing and alerting commands.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("inventory", parents=[common], help="List virtual machines.")
    p.add_argument("--resource-group", default=None)
    p.add_argument("--no-power-state", action="store_true", help="Skip per-VM instance view lookups.")

    p = sub.add_parser("metrics", parents=[common], help="Read a metric for each resource.")
    p.add_argument("--resource-group", default=None)
    p.add_argument("--resource-type", default=ResourceType.VIRTUAL_MACHINE.value)
    p.add_argument("--metric", default="Percentage CPU")
    p.add_argument("--aggregation", default="average", choices=AGGREGATIONS)
    p.add_argument("--lookback-hours", type=int, default=1)

    p = sub.add_parser("login-audit", parents=[common], help="Audit sign-in events.")
    p.add_argument("--workspace-id", required=True)
    p.add_argument("--lookback-hours", type=int, default=24)
    p.add_argument("--user", default=None, help="Only sign-ins of this userPrincipalName.")
    p.add_argument("--failed-only", action="store_true")
    p.add_argument("--limit", type=int, default=1000)

    p = sub.add_parser("cpu-alerts", parents=[common], help="Provision CPU alert rules per VM.")
    p.add_argument("--action-group", required=True, help="Existing action group name.")
    p.add_argument("--action-group-resource-group", required=True)
    p.add_argument("--resource-group", default=None, help="Only VMs in this resource group.")
    p.add_argument("--alert-resource-group", default=None, help="Resource group for the rules.")
    p.add_argument("--prefix", default="CPUAlert-")
    p.add_argument("--threshold", type=float, default=80.0)
    p.add_argument("--severity", type=int, default=2)
    p.add_argument("--window-minutes", type=int, default=5, choices=ALLOWED_WINDOW_MINUTES)
    p.add_argument("--frequency-minutes", type=int, default=1, choices=ALLOWED_FREQUENCY_MINUTES)
    p.add_argument("--description", default="Average CPU above threshold")
    p.add_argument("--tag", type=_tag, action="append", default=[], metavar="KEY=VALUE")

    p = sub.add_parser("deletion-audit", parents=[common], help="Alert on unusual deletion volume.")
    p.add_argument("--workspace-id", required=True)
    p.add_argument("--threshold-percent", type=float, default=10.0)
    p.add_argument("--lookback-hours", type=int, default=24)
    p.add_argument("--recipient", action="append", default=[])
    p.add_argument("--resource-group", default=None, help="Count only resources in this group.")

    p = sub.add_parser("policy", parents=[common], help="Create custom policy definitions.")
    p.add_argument("--file", type=Path, default=None, help="JSON policy definition(s).")
    p.add_argument("--require-tag", action="append", default=[], metavar="TAG")

    p = sub.add_parser("users", parents=[common], help="Provision directory users from CSV.")
    p.add_argument("--file", type=Path, required=True)

    p = sub.add_parser("notify", parents=[common], help="Send a plain-text email.")
    p.add_argument("--to", action="append", required=True)
    p.add_argument("--subject", required=True)
    body = p.add_mutually_exclusive_group(required=True)
    body.add_argument("--body", default=None)
    body.add_argument("--body-file", type=Path, default=None)

    return parser


def _validated(model: Callable[..., Any], **kwargs: Any) -> Any:
    try:
        return model(**kwargs)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "value"
        raise ValidationError(f"{field}: {first['msg']}") from e


def _resolve_concurrency(args: argparse.Namespace, settings: Settings) -> int:
    value = args.max_concurrency if args.max_concurrency is not None else settings.MAX_CONCURRENCY
    if not 1 <= value <= MAX_CONCURRENCY_LIMIT:
        raise ValidationError(f"--max-concurrency must be between 1 and {MAX_CONCURRENCY_LIMIT}")
    return value


def _build_adapter(settings: Settings, subscription_id: Optional[str]) -> BaseAdapter:
    # Imported late so a missing SDK is reported as a DependencyError first.
    from cloudrecon.shared.adapters.azure import AzureAdapter

    return AzureAdapter(settings.azure_credentials(subscription_id))


def _build_graph(settings: Settings, adapter: BaseAdapter) -> GraphClient:
    return GraphClient(
        adapter.credential,  # type: ignore[attr-defined]
        base_url=settings.GRAPH_API_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )


def _build_email_service(settings: Settings) -> EmailService:
    return EmailService.from_settings(settings)


# Command plans: validate everything up front, return the coroutine factory
# that performs the remote work.
Handler = Callable[[BaseAdapter], Awaitable[Dict[str, Any]]]


def _plan_inventory(args: argparse.Namespace, settings: Settings) -> Handler:
    async def handler(adapter: BaseAdapter) -> Dict[str, Any]:
        records = await collect_vm_inventory(
            adapter, args.resource_group, include_power_state=not args.no_power_state
        )
        return {"virtual_machines": [r.as_dict() for r in records], "total": len(records)}

    return handler


def _plan_metrics(args: argparse.Namespace, settings: Settings) -> Handler:
    config = _validated(
        MetricsQueryConfig,
        metric_name=args.metric,
        aggregation=args.aggregation,
        lookback_hours=args.lookback_hours,
        resource_group=args.resource_group,
        resource_type=args.resource_type or None,
    )

    async def handler(adapter: BaseAdapter) -> Dict[str, Any]:
        readings = await collect_metrics(adapter, config)
        return {
            "metric": config.metric_name,
            "aggregation": config.aggregation,
            "lookback_hours": config.lookback_hours,
            "readings": [r.as_dict() for r in readings],
        }

    return handler


def _plan_login_audit(args: argparse.Namespace, settings: Settings) -> Handler:
    config = _validated(
        LoginAuditConfig,
        workspace_id=args.workspace_id,
        lookback_hours=args.lookback_hours,
        user=args.user,
        failed_only=args.failed_only,
        limit=args.limit,
    )

    async def handler(adapter: BaseAdapter) -> Dict[str, Any]:
        report = await audit_logins(adapter, config)
        return report.as_dict()

    return handler


def _plan_cpu_alerts(args: argparse.Namespace, settings: Settings) -> Handler:
    config = _validated(
        CpuAlertConfig,
        action_group_name=args.action_group,
        action_group_resource_group=args.action_group_resource_group,
        alert_resource_group=args.alert_resource_group,
        prefix=args.prefix,
        threshold=args.threshold,
        severity=args.severity,
        window_minutes=args.window_minutes,
        frequency_minutes=args.frequency_minutes,
        description=args.description,
        tags=dict(args.tag),
    )
    concurrency = _resolve_concurrency(args, settings)
    resource_filter = ResourceFilter(
        subscription_id=args.subscription_id,
        resource_group=args.resource_group,
        resource_type=ResourceType.VIRTUAL_MACHINE.value,
    )

    async def handler(adapter: BaseAdapter) -> Dict[str, Any]:
        reconciler = CpuAlertReconciler(adapter, config, dry_run=args.dry_run)
        resources = ResourceEnumerator(adapter).list(resource_filter)
        summary = await reconciler.run(resources, max_concurrency=concurrency)
        return summary.as_dict()

    return handler


def _plan_deletion_audit(args: argparse.Namespace, settings: Settings) -> Handler:
    config = _validated(
        DeletionAuditConfig,
        workspace_id=args.workspace_id,
        threshold_percent=args.threshold_percent,
        lookback_hours=args.lookback_hours,
        recipients=[r for r in args.recipient if r.strip()],
        resource_group=args.resource_group,
    )
    if config.recipients:
        _validated(EmailMessage, to=config.recipients, subject="deletion audit")
    email_service = None
    if config.recipients and not args.dry_run:
        email_service = _build_email_service(settings)

    async def handler(adapter: BaseAdapter) -> Dict[str, Any]:
        auditor = DeletionAuditor(adapter, config, email_service, dry_run=args.dry_run)
        report = await auditor.run()
        return report.as_dict()

    return handler


def _plan_policy(args: argparse.Namespace, settings: Settings) -> Handler:
    definitions: List[PolicyDefinitionSpec] = []
    if args.file is not None:
        definitions.extend(load_policy_file(args.file))
    definitions.extend(require_tag_definition(tag) for tag in args.require_tag)
    if not definitions:
        raise ValidationError("policy requires --file and/or at least one --require-tag")
    concurrency = _resolve_concurrency(args, settings)

    async def handler(adapter: BaseAdapter) -> Dict[str, Any]:
        reconciler = PolicyDefinitionReconciler(adapter, definitions, dry_run=args.dry_run)
        summary = await reconciler.run(reconciler.descriptors(), max_concurrency=concurrency)
        return summary.as_dict()

    return handler


def _plan_users(args: argparse.Namespace, settings: Settings) -> Handler:
    users = load_users_csv(args.file)
    concurrency = _resolve_concurrency(args, settings)

    async def handler(adapter: BaseAdapter) -> Dict[str, Any]:
        async with _build_graph(settings, adapter) as graph:
            reconciler = UserProvisioningReconciler(graph, users, dry_run=args.dry_run)
            summary: RunSummary = await reconciler.run(
                reconciler.descriptors(), max_concurrency=concurrency
            )
        return summary.as_dict()

    return handler


_PLANS: Dict[str, Callable[[argparse.Namespace, Settings], Handler]] = {
    "inventory": _plan_inventory,
    "metrics": _plan_metrics,
    "login-audit": _plan_login_audit,
    "cpu-alerts": _plan_cpu_alerts,
    "deletion-audit": _plan_deletion_audit,
    "policy": _plan_policy,
    "users": _plan_users,
}


async def _notify(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    if args.body_file is not None:
        try:
            body = args.body_file.read_text(encoding="utf-8")
        except OSError as e:
            raise ValidationError(f"cannot read --body-file: {e}") from e
    else:
        body = args.body
    message = _validated(EmailMessage, to=args.to, subject=args.subject, body=body)
    if args.dry_run:
        logger.info("email_dry_run", recipients=message.to, subject=message.subject)
        return {"sent": False, "dry_run": True, "recipients": message.to}
    await _build_email_service(settings).send(message)
    return {"sent": True, "dry_run": False, "recipients": message.to}


async def _execute(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    if args.command == "notify":
        return await _notify(args, settings)

    handler = _PLANS[args.command](args, settings)
    validate_runtime_dependencies(settings, args.command)

    adapter = _build_adapter(settings, args.subscription_id)
    async with adapter:
        if not await adapter.verify_connection():
            raise AuthenticationError(
                f"Could not connect to subscription {adapter.subscription_id}: "
                f"{adapter.last_error or 'unknown error'}"
            )
        logger.info("session_established", subscription_id=adapter.subscription_id)
        return await handler(adapter)


def _format_row(item: Dict[str, Any]) -> str:
    return "  " + " ".join(
        f"{k}={json.dumps(v) if isinstance(v, (dict, list)) else v}"
        for k, v in item.items()
        if v not in (None, "", {}, [])
    )


def _render_text(payload: Dict[str, Any]) -> str:
    lines: List[str] = []
    if "outcomes" in payload:
        for outcome in payload["outcomes"]:
            lines.append(f"[{outcome['status']}] {outcome['name']}: {outcome['detail']}")
        prefix = "DRY RUN " if payload.get("dry_run") else ""
        lines.append(
            f"{prefix}summary: total={payload['total']} created={payload['created']} "
            f"skipped={payload['skipped']} failed={payload['failed']}"
        )
        return "\n".join(lines)

    for key, value in payload.items():
        if isinstance(value, list) and value and isinstance(value[0], dict):
            lines.append(f"{key}:")
            lines.extend(_format_row(item) for item in value)
        elif isinstance(value, (dict, list)):
            lines.append(f"{key}: {json.dumps(value)}")
        else:
            lines.append(f"{key}: {value}")
    return "\n".join(lines)


def _emit(payload: Dict[str, Any], output: str) -> None:
    if output == "json":
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(_render_text(payload))


async def _run(args: argparse.Namespace) -> int:
    try:
        settings = get_settings()
    except PydanticValidationError as e:
        print(f"cloudrecon: configuration error: {e}", file=sys.stderr)
        return EXIT_SETUP_ERROR

    setup_logging(verbose=args.verbose)
    structlog.contextvars.bind_contextvars(run_id=uuid.uuid4().hex[:12], command=args.command)
    logger.info("run_started", app_name=settings.APP_NAME, version=settings.VERSION, dry_run=args.dry_run)
    try:
        payload = await _execute(args, settings)
    except SetupError as e:
        logger.error("setup_failed", error=e.message, error_type=type(e).__name__)
        print(f"cloudrecon: setup error: {e.message}", file=sys.stderr)
        return EXIT_SETUP_ERROR
    except ValidationError as e:
        logger.error("validation_failed", error=e.message)
        print(f"cloudrecon: invalid parameter: {e.message}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR
    except TransportError as e:
        logger.error("run_aborted", error=e.message)
        print(f"cloudrecon: remote call failed: {e.message}", file=sys.stderr)
        return EXIT_TRANSPORT_ERROR
    except CloudReconError as e:
        logger.error("run_aborted", error=e.message, error_type=type(e).__name__)
        print(f"cloudrecon: error: {e.message}", file=sys.stderr)
        return EXIT_SETUP_ERROR
    finally:
        structlog.contextvars.clear_contextvars()

    _emit(payload, args.output)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
