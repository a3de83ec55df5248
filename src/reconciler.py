"""
Reconcilers - Turn one primary resource into an update decision.

A Reconciler owns the pass for one primary kind. DependentResourcesReconciler
is the orchestrator: it checks preconditions, runs its dependent resources in
declared order, composes the primary's status and returns an UpdateControl.
When a pass raises, the hosting runtime asks update_error_status() for the
status-only error write.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from context import Context
from dependent import DependentResource
from resources import Resource
from update_control import ErrorStatusUpdateControl, UpdateControl

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """A reconcile pass failed for a reason other than a store error."""


class PreconditionFailedError(ReconcileError):
    """A precondition rejected the primary before any dependent work."""


@dataclass(frozen=True)
class PreconditionResult:
    """Tagged outcome of a precondition check."""

    passed: bool
    message: str = ""

    @classmethod
    def ok(cls) -> "PreconditionResult":
        return cls(passed=True)

    @classmethod
    def fail(cls, message: str) -> "PreconditionResult":
        return cls(passed=False, message=message)


Precondition = Callable[[Resource, Context], PreconditionResult]


def error_message(error: BaseException) -> str:
    """Human-readable text for a failed pass, never empty."""
    return str(error) or type(error).__name__


class Reconciler(ABC):
    """Abstract base class for primary-kind reconcilers."""

    @property
    @abstractmethod
    def primary_kind(self) -> str:
        """Kind of the primary resources this reconciler handles."""
        pass

    @abstractmethod
    async def reconcile(self, primary: Resource, context: Context) -> UpdateControl:
        """
        Run one pass for ``primary``.

        Raises on failure; the hosting runtime then calls
        update_error_status().
        """
        pass

    def dependents(self) -> List[DependentResource]:
        """Dependent resources whose kinds should trigger this reconciler."""
        return []

    def update_error_status(
        self, primary: Resource, context: Context, error: BaseException
    ) -> ErrorStatusUpdateControl:
        """
        Build the status-only write recording a failed pass.

        Performs no I/O and does not raise.
        """
        resource = primary.copy()
        resource.status = dict(resource.status or {})
        resource.status["errorMessage"] = f"Error: {error_message(error)}"
        return ErrorStatusUpdateControl.update_status(resource)


class DependentResourcesReconciler(Reconciler):
    """
    Orchestrates an ordered list of dependent resources for a primary.

    Dependents run strictly in the order given. A failure aborts the rest
    of the sequence; secondaries already written in the same pass are kept,
    and the next pass converges from wherever this one stopped.
    """

    def __init__(
        self,
        dependents: Sequence[DependentResource],
        preconditions: Optional[Sequence[Precondition]] = None,
    ):
        self._dependents = list(dependents)
        self._preconditions = list(preconditions or [])

    def dependents(self) -> List[DependentResource]:
        return list(self._dependents)

    def check_preconditions(self, primary: Resource, context: Context) -> PreconditionResult:
        for precondition in self._preconditions:
            result = precondition(primary, context)
            if not result.passed:
                return result
        return PreconditionResult.ok()

    @abstractmethod
    def build_status(self, primary: Resource, context: Context) -> Dict[str, Any]:
        """Derive the primary's status from the dependents' reconciled values."""
        pass

    async def reconcile(self, primary: Resource, context: Context) -> UpdateControl:
        primary_id = primary.resource_id

        check = self.check_preconditions(primary, context)
        if not check.passed:
            raise PreconditionFailedError(check.message)

        for dependent in self._dependents:
            result = await dependent.reconcile(primary, context)
            logger.debug(
                f"{dependent.kind} for {self.primary_kind} {primary_id}: "
                f"{result.operation.value}"
            )

        updated = primary.copy()
        updated.status = self.build_status(primary, context)
        logger.info(
            f"Reconciled {self.primary_kind} {primary_id} "
            f"({context.trigger_reason})"
        )
        return UpdateControl.update_status(updated)
