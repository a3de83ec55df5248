"""Unit tests for reconciler.py - Orchestration of dependent resources."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from context import Context
from dependent import DependentResult, Operation
from reconciler import (
    DependentResourcesReconciler,
    PreconditionFailedError,
    PreconditionResult,
    error_message,
)
from resources import Resource
from update_control import ErrorStatusUpdateControl


def make_dependent(kind, calls, error=None):
    dependent = MagicMock()
    dependent.kind = kind

    async def reconcile(primary, context):
        calls.append(kind)
        if error is not None:
            raise error
        return DependentResult(Operation.UNCHANGED, Resource(kind=kind, name=primary.name))

    dependent.reconcile = AsyncMock(side_effect=reconcile)
    return dependent


class CountingReconciler(DependentResourcesReconciler):
    @property
    def primary_kind(self):
        return "WebPage"

    def build_status(self, primary, context):
        return {"dependents": len(self.dependents())}


@pytest.fixture
def primary():
    return Resource(
        kind="WebPage", name="site1", namespace="ns1", status={"old": True}
    )


@pytest.fixture
def context():
    return Context(store=MagicMock())


class TestPreconditionResult:
    def test_ok_and_fail(self):
        assert PreconditionResult.ok().passed is True
        failed = PreconditionResult.fail("nope")
        assert failed.passed is False
        assert failed.message == "nope"


class TestErrorMessage:
    def test_uses_message(self):
        assert error_message(RuntimeError("boom")) == "boom"

    def test_falls_back_to_type_name(self):
        assert error_message(KeyError()) == "KeyError"


@pytest.mark.asyncio
class TestDependentResourcesReconciler:
    """Tests for DependentResourcesReconciler.reconcile."""

    async def test_runs_dependents_in_order(self, primary, context):
        calls = []
        reconciler = CountingReconciler(
            [make_dependent(k, calls) for k in ("ConfigMap", "Deployment", "Service")]
        )

        control = await reconciler.reconcile(primary, context)

        assert calls == ["ConfigMap", "Deployment", "Service"]
        assert control.status_update is True
        assert control.resource_update is False
        assert control.resource.status == {"dependents": 3}
        # The input primary is not mutated
        assert primary.status == {"old": True}

    async def test_failure_aborts_remaining(self, primary, context):
        calls = []
        reconciler = CountingReconciler(
            [
                make_dependent("ConfigMap", calls),
                make_dependent("Deployment", calls, error=RuntimeError("boom")),
                make_dependent("Service", calls),
            ]
        )

        with pytest.raises(RuntimeError, match="boom"):
            await reconciler.reconcile(primary, context)

        assert calls == ["ConfigMap", "Deployment"]

    async def test_failed_precondition_skips_dependents(self, primary, context):
        calls = []
        reconciler = CountingReconciler(
            [make_dependent("ConfigMap", calls)],
            preconditions=[
                lambda p, c: PreconditionResult.ok(),
                lambda p, c: PreconditionResult.fail("not today"),
                lambda p, c: pytest.fail("later preconditions are not evaluated"),
            ],
        )

        with pytest.raises(PreconditionFailedError, match="not today"):
            await reconciler.reconcile(primary, context)

        assert calls == []

    async def test_dependents_returns_copy(self):
        calls = []
        dependent = make_dependent("ConfigMap", calls)
        reconciler = CountingReconciler([dependent])

        reconciler.dependents().clear()

        assert reconciler.dependents() == [dependent]


class TestUpdateErrorStatus:
    def test_records_error_message(self, primary, context):
        reconciler = CountingReconciler([])

        control = reconciler.update_error_status(
            primary, context, RuntimeError("Simulating error")
        )

        assert isinstance(control, ErrorStatusUpdateControl)
        assert control.status_update is True
        assert control.resource.status == {
            "old": True,
            "errorMessage": "Error: Simulating error",
        }
        assert primary.status == {"old": True}

