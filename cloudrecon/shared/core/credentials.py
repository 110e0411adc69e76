"""
Typed credential classes.
Keeps adapters decoupled from environment parsing.
"""
from typing import Optional

from pydantic import BaseModel, SecretStr


class CloudCredentials(BaseModel):
    """Base class for all cloud credentials."""
    pass


class AzureCredentials(CloudCredentials):
    """Azure Service Principal or ambient (DefaultAzureCredential) identity."""
    subscription_id: str
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None
    auth_method: str = "auto"  # auto | secret | default

    @property
    def uses_client_secret(self) -> bool:
        if self.auth_method == "secret":
            return True
        if self.auth_method == "default":
            return False
        return bool(self.tenant_id and self.client_id and self.client_secret)
