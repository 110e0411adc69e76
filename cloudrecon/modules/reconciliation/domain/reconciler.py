import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterable, AsyncIterator, Iterable, List, Optional, Union

import structlog

from cloudrecon.modules.reconciliation.domain.models import (
    ActionOutcome,
    ActionRequest,
    OutcomeStatus,
    ResourceDescriptor,
    RunSummary,
)

logger = structlog.get_logger()

ResourceSource = Union[Iterable[ResourceDescriptor], AsyncIterable[ResourceDescriptor]]


async def _iterate(resources: ResourceSource) -> AsyncIterator[ResourceDescriptor]:
    if hasattr(resources, "__aiter__"):
        async for resource in resources:  # type: ignore[union-attr]
            yield resource
    else:
        for resource in resources:  # type: ignore[union-attr]
            yield resource


class BaseReconciler(ABC):
    """
    Idempotent check-then-act over one resource at a time.

    1. look up existing remote state under a deterministic key
    2. already satisfied -> SKIPPED
    3. missing prerequisite -> SKIPPED
    4. dry-run -> SKIPPED ("would create" / "would update"), nothing mutated
    5. mutate -> CREATED, or FAILED with the error as detail
    """

    action_name: str = "reconcile"

    def __init__(self, adapter: Any, config: Any = None, *, dry_run: bool = False):
        self.adapter = adapter
        self.config = config
        self.dry_run = dry_run

    @abstractmethod
    def build_request(self, resource: ResourceDescriptor, config: Any) -> ActionRequest:
        """Derive the desired state for one resource."""

    @abstractmethod
    async def fetch_existing(self, request: ActionRequest) -> Optional[Any]:
        """Return existing remote state, or None when absent."""

    @abstractmethod
    def is_satisfied(self, existing: Any, request: ActionRequest) -> bool:
        """True when existing state already matches the request."""

    @abstractmethod
    async def apply(self, request: ActionRequest, existing: Optional[Any]) -> str:
        """Perform the mutating call and return a short detail."""

    def key_for(self, request: ActionRequest) -> str:
        """Deterministic name of the remote object managed for this resource."""
        return request.target.name

    async def check_prerequisites(self, request: ActionRequest) -> Optional[str]:
        """Return a reason string when a referenced dependency is missing."""
        return None

    def _outcome(
        self, resource: ResourceDescriptor, status: OutcomeStatus, detail: str, **metadata: Any
    ) -> ActionOutcome:
        return ActionOutcome(target=resource, status=status, detail=detail, metadata=metadata)

    async def reconcile(self, resource: ResourceDescriptor, config: Any = None) -> ActionOutcome:
        """Reconcile one resource; never raises for remote failures."""
        action = self.action_name
        log = logger.bind(action=action, resource_id=resource.id)
        try:
            request = self.build_request(resource, config if config is not None else self.config)
            key = self.key_for(request)

            existing = await self.fetch_existing(request)
            if existing is not None and self.is_satisfied(existing, request):
                log.info("reconcile_skipped", key=key, reason="in_desired_state")
                return self._outcome(resource, OutcomeStatus.SKIPPED, f"{key} already in desired state")

            missing = await self.check_prerequisites(request)
            if missing:
                log.warning("reconcile_skipped", key=key, reason="prerequisite_missing", detail=missing)
                return self._outcome(resource, OutcomeStatus.SKIPPED, missing)

            verb = "update" if existing is not None else "create"
            if self.dry_run:
                log.info("reconcile_dry_run", key=key, intended=verb)
                return self._outcome(
                    resource, OutcomeStatus.SKIPPED, f"would {verb} {key}", dry_run=True
                )

            detail = await self.apply(request, existing)
            log.info("reconcile_created", key=key, operation=verb, detail=detail)
            return self._outcome(resource, OutcomeStatus.CREATED, detail, operation=verb)

        except Exception as e:
            log.error("reconcile_failed", error=str(e), error_type=type(e).__name__)
            return self._outcome(resource, OutcomeStatus.FAILED, str(e))

    async def run(self, resources: ResourceSource, max_concurrency: int = 1) -> RunSummary:
        """
        Reconcile every resource. Outcomes keep enumeration order.
        Enumeration errors propagate; per-resource errors do not.
        """
        summary = RunSummary(action=self.action_name, dry_run=self.dry_run)

        if max_concurrency <= 1:
            async for resource in _iterate(resources):
                summary.outcomes.append(await self.reconcile(resource))
        else:
            semaphore = asyncio.Semaphore(max_concurrency)

            async def bounded(resource: ResourceDescriptor) -> ActionOutcome:
                async with semaphore:
                    return await self.reconcile(resource)

            tasks: List["asyncio.Task[ActionOutcome]"] = []
            try:
                async for resource in _iterate(resources):
                    tasks.append(asyncio.create_task(bounded(resource)))
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            summary.outcomes.extend(await asyncio.gather(*tasks))

        logger.info(
            "reconcile_run_completed",
            action=self.action_name,
            dry_run=self.dry_run,
            total=len(summary.outcomes),
            created=summary.created,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary
