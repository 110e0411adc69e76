"""
Resource-deletion auditing.

Counts successful ARM delete operations in the AzureActivity table over a
lookback window, compares them with the number of resources that still exist
and emails the recipients when the deletion share exceeds the threshold.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from cloudrecon.modules.notifications.domain.email_service import EmailMessage, EmailService
from cloudrecon.modules.reconciliation.domain.enumerator import ResourceEnumerator
from cloudrecon.modules.reconciliation.domain.models import ResourceFilter
from cloudrecon.modules.reconciliation.domain.threshold import deletion_threshold, evaluate
from cloudrecon.shared.adapters.base import BaseAdapter
from cloudrecon.shared.core.kql import kql_string

logger = structlog.get_logger()

DELETED_COUNT_COLUMN = "DeletedCount"

# The time window is applied through the query's timespan parameter.
_DELETIONS_QUERY = """AzureActivity
| where SubscriptionId =~ {subscription_id}{scope}
| where OperationNameValue endswith "/DELETE"
| where ActivityStatusValue in~ ("Success", "Succeeded")
| summarize DeletedCount = count()"""


class DeletionAuditConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    workspace_id: str = Field(..., min_length=1)
    threshold_percent: float = Field(default=10.0, ge=0, le=100)
    lookback_hours: int = Field(default=24, ge=1, le=720)
    recipients: List[str] = Field(default_factory=list)
    resource_group: Optional[str] = None

    @property
    def lookback(self) -> timedelta:
        return timedelta(hours=self.lookback_hours)


@dataclass
class DeletionAuditReport:
    deleted_count: int
    total_count: int
    threshold_percent: float
    lookback_hours: int
    breached: bool
    dry_run: bool = False
    notified: bool = False
    notification_error: Optional[str] = None
    recipients: List[str] = field(default_factory=list)

    @property
    def threshold(self) -> float:
        return deletion_threshold(self.total_count, self.threshold_percent)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "deleted_count": self.deleted_count,
            "total_count": self.total_count,
            "threshold_percent": self.threshold_percent,
            "threshold": self.threshold,
            "lookback_hours": self.lookback_hours,
            "breached": self.breached,
            "dry_run": self.dry_run,
            "notified": self.notified,
            "notification_error": self.notification_error,
        }


def build_deletions_query(subscription_id: str, resource_group: Optional[str] = None) -> str:
    """Deletions are counted over the same scope as the resource total."""
    scope = f"\n| where ResourceGroup =~ {kql_string(resource_group)}" if resource_group else ""
    return _DELETIONS_QUERY.format(subscription_id=kql_string(subscription_id), scope=scope)


def parse_deleted_count(rows: List[Dict[str, Any]]) -> int:
    """An empty result means no deletions were recorded in the window."""
    if not rows:
        return 0
    value = rows[0].get(DELETED_COUNT_COLUMN)
    if value is None:
        return 0
    return int(value)


def _alert_body(report: DeletionAuditReport, subscription_id: str) -> str:
    return (
        f"Resource deletions in subscription {subscription_id} exceeded the configured threshold.\n\n"
        f"Deleted resources (last {report.lookback_hours}h): {report.deleted_count}\n"
        f"Current resource count: {report.total_count}\n"
        f"Threshold: {report.threshold_percent:g}% ({report.threshold:g} resources)\n"
    )


class DeletionAuditor:
    def __init__(
        self,
        adapter: BaseAdapter,
        config: DeletionAuditConfig,
        email_service: Optional[EmailService] = None,
        *,
        dry_run: bool = False,
    ):
        self.adapter = adapter
        self.config = config
        self.email_service = email_service
        self.dry_run = dry_run

    async def count_deletions(self) -> int:
        rows = await self.adapter.query_log(
            self.config.workspace_id,
            build_deletions_query(self.adapter.subscription_id, self.config.resource_group),
            self.config.lookback,
        )
        return parse_deleted_count(rows)

    async def count_resources(self) -> int:
        resources = await ResourceEnumerator(self.adapter).collect(
            ResourceFilter(resource_group=self.config.resource_group)
        )
        return len(resources)

    async def run(self) -> DeletionAuditReport:
        deleted = await self.count_deletions()
        total = await self.count_resources()
        report = DeletionAuditReport(
            deleted_count=deleted,
            total_count=total,
            threshold_percent=self.config.threshold_percent,
            lookback_hours=self.config.lookback_hours,
            breached=evaluate(deleted, total, self.config.threshold_percent),
            dry_run=self.dry_run,
            recipients=list(self.config.recipients),
        )
        log = logger.bind(
            deleted_count=deleted,
            total_count=total,
            threshold=report.threshold,
        )

        if not report.breached:
            log.info("deletion_threshold_not_exceeded")
            return report

        log.warning("deletion_threshold_exceeded")
        if not self.config.recipients:
            log.info("deletion_alert_no_recipients")
            return report
        if self.dry_run:
            log.info("deletion_alert_dry_run", recipients=self.config.recipients)
            return report
        if self.email_service is None:
            report.notification_error = "email service not configured"
            log.error("deletion_alert_not_sent", error=report.notification_error)
            return report

        message = EmailMessage(
            to=self.config.recipients,
            subject=f"[cloudrecon] Resource deletion threshold exceeded ({deleted} deleted)",
            body=_alert_body(report, self.adapter.subscription_id),
        )
        try:
            await self.email_service.send(message)
            report.notified = True
        except Exception as e:
            report.notification_error = str(e)
            log.error("deletion_alert_not_sent", error=str(e))
        return report
