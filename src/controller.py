"""
Operator Controller - Hosting runtime for a primary-kind reconciler.

Reads the primary fresh from the store, runs the reconciler, persists the
resulting update decision and, when the pass raises, persists the error
status instead. Passes are triggered by change notifications resolved
through the association registry and by a periodic full resync.
"""

import asyncio
import logging
from typing import List, Optional, Set, Union

from association import AssociationRegistry
from config import ControllerConfig
from context import Context
from events import EventBus
from reconciler import Reconciler
from resources import Resource, ResourceID
from store import ResourceStore
from update_control import ErrorStatusUpdateControl, UpdateControl

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

PassOutcome = Union[UpdateControl, ErrorStatusUpdateControl]


class Controller:
    """
    Runs one Reconciler against a ResourceStore.

    Passes for different primaries run concurrently, bounded by
    ``max_concurrent_reconciles``. Two passes for the same primary are not
    deduplicated; optimistic concurrency in the store rejects the stale
    write and the next notification converges.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        store: ResourceStore,
        event_bus: Optional[EventBus] = None,
        config: Optional[ControllerConfig] = None,
        registry: Optional[AssociationRegistry] = None,
    ):
        self.reconciler = reconciler
        self.store = store
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False
        self._event_bus = event_bus

        if registry is None:
            registry = AssociationRegistry(reconciler.primary_kind)
            for dependent in reconciler.dependents():
                registry.register_dependent(dependent)
        self.registry = registry

        self._tasks: List[asyncio.Task] = []
        self._inflight: Set[asyncio.Task] = set()

    @property
    def primary_kind(self) -> str:
        return self.reconciler.primary_kind

    async def start(self):
        """Start the watch and resync loops and run until stopped."""
        logger.info(f"Starting controller for {self.primary_kind}")
        self.running = True

        self._tasks = [asyncio.create_task(self._resync_loop())]
        if self._event_bus is not None:
            self._tasks.append(asyncio.create_task(self._watch_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info(f"Controller tasks for {self.primary_kind} cancelled")

    async def stop(self):
        """Stop the loops and cancel in-flight passes."""
        logger.info(f"Stopping controller for {self.primary_kind}")
        self.running = False

        for task in [*self._tasks, *self._inflight]:
            if not task.done():
                task.cancel()
        self._tasks.clear()

    async def _watch_loop(self):
        """Schedule a pass for every primary a change notification resolves to."""
        async for primary_id in self.registry.watch(self._event_bus):
            if not self.running:
                break
            self._spawn(primary_id, "event")

    def _spawn(self, primary_id: ResourceID, trigger_reason: str) -> None:
        task = asyncio.create_task(
            self.reconcile(primary_id, trigger_reason),
            name=f"reconcile {self.primary_kind} {primary_id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        task.add_done_callback(self._log_task_failure)

    def _log_task_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Task {task.get_name()} failed: {exc}", exc_info=exc)

    async def _resync_loop(self):
        """Periodically re-reconcile every primary (drift detection)."""
        while self.running:
            try:
                await self.resync()
                await asyncio.sleep(self.reconcile_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)
                await asyncio.sleep(10)  # Brief pause on error

    async def resync(self) -> int:
        """
        Reconcile every primary currently in the store.

        Returns:
            Number of primaries found.
        """
        primaries = await self.store.list(self.primary_kind)
        if primaries:
            logger.info(f"Resyncing {len(primaries)} {self.primary_kind} resource(s)")

        results = await asyncio.gather(
            *(self.reconcile(p.resource_id, "resync") for p in primaries),
            return_exceptions=True,
        )
        for primary, result in zip(primaries, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Resync of {self.primary_kind} {primary.resource_id} failed: "
                    f"{result}",
                    exc_info=result,
                )
        return len(primaries)

    async def reconcile(
        self, primary_id: ResourceID, trigger_reason: str = "manual"
    ) -> Optional[PassOutcome]:
        """
        Run one pass for a primary and persist its outcome.

        Returns:
            The UpdateControl of a successful pass, the
            ErrorStatusUpdateControl of a failed one, or None when the
            primary no longer exists.
        """
        async with self.semaphore:
            primary = await self.store.get(
                self.primary_kind, primary_id.name, primary_id.namespace
            )
            if primary is None:
                logger.debug(f"{self.primary_kind} {primary_id} is gone, nothing to do")
                return None

            context = Context(store=self.store, trigger_reason=trigger_reason)

            try:
                control = await self.reconciler.reconcile(primary.copy(), context)
            except Exception as e:
                logger.error(
                    f"Failed to reconcile {self.primary_kind} {primary_id}: {e}",
                    exc_info=True,
                )
                error_control = self.reconciler.update_error_status(
                    primary.copy(), context, e
                )
                await self._apply_error_status(primary, error_control)
                return error_control

            try:
                await self._apply_update(primary, control)
            except Exception as e:
                logger.error(
                    f"Failed to persist {self.primary_kind} {primary_id}: {e}",
                    exc_info=True,
                )
            return control

    async def _apply_update(self, primary: Resource, control: UpdateControl) -> None:
        """Persist an update decision: resource write first, then status."""
        if control.is_no_update:
            return

        resource = control.resource
        if control.resource_update:
            write = self.store.patch if control.patch else self.store.update
            written = await write(resource)
            resource = written.copy()
            resource.status = control.resource.status

        if control.status_update:
            if not control.resource_update and resource.status == primary.status:
                logger.debug(
                    f"Status of {self.primary_kind} {primary.resource_id} unchanged"
                )
                return
            write = self.store.patch_status if control.patch else self.store.update_status
            await write(resource)

    async def _apply_error_status(
        self, primary: Resource, control: ErrorStatusUpdateControl
    ) -> None:
        """Best-effort single status write; failures are only logged."""
        if control.resource.status == primary.status:
            return
        write = self.store.patch_status if control.patch else self.store.update_status
        try:
            await write(control.resource)
        except Exception as e:
            logger.error(
                f"Failed to record error status on {self.primary_kind} "
                f"{primary.resource_id}: {e}"
            )

    async def trigger_reconciliation(self, primary_id: ResourceID) -> None:
        """Manually schedule a pass for a specific primary."""
        logger.info(f"Manually triggering reconciliation for {primary_id}")
        self._spawn(primary_id, "manual")
