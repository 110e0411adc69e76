"""Runtime dependency validation before any remote call is made."""

from __future__ import annotations

from importlib.util import find_spec

import structlog

from cloudrecon.shared.core.config import Settings
from cloudrecon.shared.core.exceptions import DependencyError

logger = structlog.get_logger()

# Import targets required by every Azure-backed command.
AZURE_CORE_MODULES = (
    "azure.identity",
    "azure.mgmt.resource",
)

# Extra import targets per command.
COMMAND_MODULES: dict[str, tuple[str, ...]] = {
    "inventory": ("azure.mgmt.compute",),
    "metrics": ("azure.mgmt.compute", "azure.monitor.query"),
    "login-audit": ("azure.monitor.query",),
    "cpu-alerts": ("azure.mgmt.compute", "azure.mgmt.monitor"),
    "deletion-audit": ("azure.monitor.query",),
    "policy": (),
    "users": ("httpx",),
    "notify": (),
}


def _module_available(module_name: str) -> bool:
    """Return True when the import target can be resolved."""
    try:
        return find_spec(module_name) is not None
    except ModuleNotFoundError:
        # find_spec raises when a parent package is missing.
        return False


def required_modules(command: str) -> tuple[str, ...]:
    if command == "notify":
        return ()
    return AZURE_CORE_MODULES + COMMAND_MODULES.get(command, ())


def validate_runtime_dependencies(settings: Settings, command: str) -> None:
    """
    Fail fast with DependencyError when an SDK module needed by ``command`` is missing.
    Skipped entirely when TESTING is set.
    """
    if settings.TESTING:
        logger.debug("runtime_dependency_validation_skipped_testing")
        return

    missing = [name for name in required_modules(command) if not _module_available(name)]
    if missing:
        raise DependencyError(
            f"Missing required module(s) for '{command}': {', '.join(missing)}. "
            "Install the cloudrecon package with its Azure dependencies.",
            details={"missing": missing},
        )
    logger.debug("runtime_dependencies_available", command=command)
