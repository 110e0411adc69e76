"""
Directory user provisioning through Microsoft Graph.

Users are keyed by userPrincipalName. Existing users are never modified;
new users get a random temporary password that must be changed at first
sign-in. The password is not logged or returned in outcomes.
"""

import csv
import re
import secrets
import string
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from cloudrecon.modules.reconciliation.domain.models import (
    ActionRequest,
    ResourceDescriptor,
    ResourceType,
)
from cloudrecon.modules.reconciliation.domain.reconciler import BaseReconciler
from cloudrecon.shared.adapters.graph import GraphClient
from cloudrecon.shared.core.exceptions import ValidationError

logger = structlog.get_logger()

_UPN_RE = re.compile(r"^[A-Za-z0-9._'\-+]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")
_NICKNAME_STRIP_RE = re.compile(r"[^A-Za-z0-9._\-]")
_PASSWORD_LENGTH = 20
_PASSWORD_SYMBOLS = "!@#$%^&*-_=+?"


class UserSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    user_principal_name: str
    display_name: str = Field(..., min_length=1, max_length=256)
    mail_nickname: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    usage_location: Optional[str] = None
    account_enabled: bool = True

    @field_validator("user_principal_name")
    @classmethod
    def validate_upn(cls, v: str) -> str:
        v = v.strip()
        if not _UPN_RE.match(v):
            raise ValueError(f"invalid userPrincipalName: {v!r}")
        return v

    @field_validator("usage_location")
    @classmethod
    def validate_usage_location(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip().upper()
        if len(v) != 2 or not v.isalpha():
            raise ValueError("usage_location must be a two-letter country code")
        return v

    @property
    def nickname(self) -> str:
        if self.mail_nickname:
            return self.mail_nickname
        local = self.user_principal_name.split("@", 1)[0]
        return _NICKNAME_STRIP_RE.sub("", local) or "user"

    def descriptor(self) -> ResourceDescriptor:
        return ResourceDescriptor(
            id=f"/users/{self.user_principal_name}",
            name=self.user_principal_name,
            resource_group="",
            type=ResourceType.DIRECTORY_USER,
        )

    def graph_payload(self, password: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "accountEnabled": self.account_enabled,
            "displayName": self.display_name,
            "mailNickname": self.nickname,
            "userPrincipalName": self.user_principal_name,
            "passwordProfile": {
                "forceChangePasswordNextSignIn": True,
                "password": password,
            },
        }
        optional = {
            "givenName": self.given_name,
            "surname": self.surname,
            "jobTitle": self.job_title,
            "department": self.department,
            "usageLocation": self.usage_location,
        }
        payload.update({k: v for k, v in optional.items() if v})
        return payload


def generate_temporary_password(length: int = _PASSWORD_LENGTH) -> str:
    """Random password meeting Entra ID complexity (all four character classes)."""
    alphabet = string.ascii_letters + string.digits + _PASSWORD_SYMBOLS
    while True:
        password = "".join(secrets.choice(alphabet) for _ in range(length))
        if (
            any(c.islower() for c in password)
            and any(c.isupper() for c in password)
            and any(c.isdigit() for c in password)
            and any(c in _PASSWORD_SYMBOLS for c in password)
        ):
            return password


# CSV header aliases -> UserSpec fields
_CSV_COLUMNS = {
    "userprincipalname": "user_principal_name",
    "upn": "user_principal_name",
    "displayname": "display_name",
    "mailnickname": "mail_nickname",
    "givenname": "given_name",
    "firstname": "given_name",
    "surname": "surname",
    "lastname": "surname",
    "jobtitle": "job_title",
    "department": "department",
    "usagelocation": "usage_location",
    "accountenabled": "account_enabled",
}


def _normalize_header(name: str) -> str:
    key = re.sub(r"[\s_\-]", "", (name or "").strip().lower())
    return _CSV_COLUMNS.get(key, key)


def load_users_csv(path: Path) -> List[UserSpec]:
    """Parse a users CSV; any invalid row rejects the whole file."""
    if not path.is_file():
        raise ValidationError(f"users file not found: {path}")

    users: List[UserSpec] = []
    seen: set = set()
    with path.open(newline="", encoding="utf-8-sig") as handle:
        reader = csv.DictReader(handle)
        if not reader.fieldnames:
            raise ValidationError(f"users file {path} has no header row")
        for line_no, row in enumerate(reader, start=2):
            data = {
                _normalize_header(k): (v.strip() if isinstance(v, str) else v)
                for k, v in row.items()
                if k is not None and v not in (None, "")
            }
            try:
                spec = UserSpec(**data)
            except PydanticValidationError as e:
                raise ValidationError(f"{path}:{line_no}: {e.errors()[0]['msg']}") from e
            key = spec.user_principal_name.lower()
            if key in seen:
                raise ValidationError(f"{path}:{line_no}: duplicate user {spec.user_principal_name}")
            seen.add(key)
            users.append(spec)
    return users


class UserProvisioningReconciler(BaseReconciler):
    action_name = "user_provisioning"

    def __init__(self, graph: GraphClient, users: Sequence[UserSpec], *, dry_run: bool = False):
        super().__init__(graph, None, dry_run=dry_run)
        self._users = {u.user_principal_name.lower(): u for u in users}

    def descriptors(self) -> List[ResourceDescriptor]:
        return [u.descriptor() for u in self._users.values()]

    def build_request(self, resource: ResourceDescriptor, config: Any) -> ActionRequest:
        spec = self._users.get(resource.name.lower())
        if spec is None:
            raise ValidationError(f"no user definition for {resource.name}")
        return ActionRequest(target=resource, desired_state=spec)

    async def fetch_existing(self, request: ActionRequest) -> Optional[Dict[str, Any]]:
        return await self.adapter.get_user(request.desired_state.user_principal_name)

    def is_satisfied(self, existing: Dict[str, Any], request: ActionRequest) -> bool:
        # Existing accounts are left untouched.
        return True

    async def apply(self, request: ActionRequest, existing: Optional[Dict[str, Any]]) -> str:
        spec: UserSpec = request.desired_state
        created = await self.adapter.create_user(
            spec.graph_payload(generate_temporary_password())
        )
        logger.info(
            "directory_user_created",
            user_principal_name=spec.user_principal_name,
            user_id=created.get("id"),
        )
        return f"created user {spec.user_principal_name} (password change required at next sign-in)"
