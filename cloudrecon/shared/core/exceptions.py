"""
Error taxonomy for cloudrecon.

SetupError and ValidationError are fatal and abort a run before any resource
is touched. TransportError is fatal during enumeration and recorded per item
during reconciliation.
"""

import re
from typing import Any, Dict, Optional

_BEARER_RE = re.compile(r"(?i)bearer\s+[a-z0-9\-._~+/]+=*")
_SECRET_KV_RE = re.compile(
    r"(?i)(client_secret|password|access_token|sig)=([^&\s]+)"
)


def sanitize_message(message: str) -> str:
    """Strip bearer tokens and secret query parameters from error text."""
    text = _BEARER_RE.sub("Bearer [REDACTED]", str(message))
    return _SECRET_KV_RE.sub(r"\1=[REDACTED]", text)


class CloudReconError(Exception):
    """Base class for all cloudrecon errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = sanitize_message(message)
        self.details = details or {}
        super().__init__(self.message)


class SetupError(CloudReconError):
    """Run cannot start: missing module, failed auth or missing configuration."""


class ConfigurationError(SetupError):
    """Required configuration is missing or inconsistent."""


class AuthenticationError(SetupError):
    """The cloud provider rejected the configured credentials."""


class DependencyError(SetupError):
    """A required SDK module is not installed."""


class TransportError(CloudReconError):
    """A remote call to the provider (or SMTP / Graph) failed."""


class ValidationError(CloudReconError):
    """A user supplied parameter is invalid."""
