from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cloudrecon.shared.adapters.base import BaseAdapter
from cloudrecon.shared.core.kql import kql_string

logger = structlog.get_logger()

SUCCESS_RESULT_TYPE = "0"

_PROJECTION = (
    "| project TimeGenerated, UserPrincipalName, AppDisplayName, IPAddress, "
    "Location, ResultType, ResultDescription"
)


class LoginAuditConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    workspace_id: str = Field(..., min_length=1)
    lookback_hours: int = Field(default=24, ge=1, le=720)
    user: Optional[str] = None
    failed_only: bool = False
    limit: int = Field(default=1000, ge=1, le=10000)

    @field_validator("user")
    @classmethod
    def strip_user(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def lookback(self) -> timedelta:
        return timedelta(hours=self.lookback_hours)


@dataclass(frozen=True)
class LoginEvent:
    time: str
    user: str
    app: str
    ip_address: str
    location: str
    result_type: str
    result_description: str

    @property
    def succeeded(self) -> bool:
        return self.result_type == SUCCESS_RESULT_TYPE

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LoginEvent":
        def text(key: str) -> str:
            value = row.get(key)
            return "" if value is None else str(value)

        return cls(
            time=text("TimeGenerated"),
            user=text("UserPrincipalName"),
            app=text("AppDisplayName"),
            ip_address=text("IPAddress"),
            location=text("Location"),
            result_type=text("ResultType"),
            result_description=text("ResultDescription"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "user": self.user,
            "app": self.app,
            "ip_address": self.ip_address,
            "location": self.location,
            "result_type": self.result_type,
            "result_description": self.result_description,
            "succeeded": self.succeeded,
        }


@dataclass
class LoginAuditReport:
    events: List[LoginEvent] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.events)

    @property
    def failed(self) -> int:
        return sum(1 for e in self.events if not e.succeeded)

    def per_user(self) -> Dict[str, int]:
        return dict(Counter(e.user for e in self.events).most_common())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "failed": self.failed,
            "per_user": self.per_user(),
            "events": [e.as_dict() for e in self.events],
        }


def build_signin_query(config: LoginAuditConfig) -> str:
    lines = ["SigninLogs"]
    if config.user:
        lines.append(f"| where UserPrincipalName =~ {kql_string(config.user)}")
    if config.failed_only:
        lines.append(f"| where ResultType != {kql_string(SUCCESS_RESULT_TYPE)}")
    lines.append(_PROJECTION)
    lines.append("| order by TimeGenerated desc")
    lines.append(f"| take {int(config.limit)}")
    return "\n".join(lines)


async def audit_logins(adapter: BaseAdapter, config: LoginAuditConfig) -> LoginAuditReport:
    rows = await adapter.query_log(config.workspace_id, build_signin_query(config), config.lookback)
    report = LoginAuditReport(events=[LoginEvent.from_row(row) for row in rows])
    logger.info(
        "login_audit_completed",
        total=report.total,
        failed=report.failed,
        lookback_hours=config.lookback_hours,
        failed_only=config.failed_only,
    )
    return report
