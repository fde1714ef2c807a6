"""
winfleet/fleet/controller.py

The fleet reconciliation controller:
  - reconcile(): pure diff of the desired set against the actual records.
  - FleetController: runs passes on a resync timer (and on notify()), and
    schedules one worker per instance, at most `max_concurrency` steps at a time.

A pass whose inputs cannot be read is abandoned before anything is dispatched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from winfleet.fleet.bootstrap import BootstrapStateMachine
from winfleet.fleet.errors import SourceUnavailableError
from winfleet.fleet.interfaces import DesiredStateSource, RecordStore
from winfleet.fleet.version import ConfigurationVersionTracker
from winfleet.models.actions import Action, ActionKind
from winfleet.models.instance import (
    BootstrapState,
    ConfigurationFingerprint,
    DesiredInstanceSpec,
    InstanceRecord,
    Operation,
)
from winfleet.utils.backoff import BackoffPolicy
from winfleet.utils.waiting import wait_any

logger = logging.getLogger(__name__)


def _matched_kind(
    record: InstanceRecord, current_fingerprint: ConfigurationFingerprint, now: float
) -> ActionKind:
    if record.building_stale(current_fingerprint):
        # Partly built for a configuration that is no longer current
        if record.state == BootstrapState.FAILED:
            return ActionKind.RESUME
        return ActionKind.RECONFIGURE
    if record.state == BootstrapState.FAILED:
        if record.non_retryable:
            # Only an operator fix (a new configuration) makes a retry worthwhile
            changed = record.failed_fingerprint != current_fingerprint
            return ActionKind.RESUME if changed else ActionKind.NOOP
        due = record.next_attempt_at is None or record.next_attempt_at <= now
        return ActionKind.RESUME if due else ActionKind.NOOP
    if record.state == BootstrapState.READY:
        stale = record.fingerprint != current_fingerprint
        return ActionKind.RECONFIGURE if stale else ActionKind.NOOP
    return ActionKind.RESUME


def reconcile(
    desired: List[DesiredInstanceSpec],
    actual: List[InstanceRecord],
    current_fingerprint: ConfigurationFingerprint,
    now: float,
) -> List[Action]:
    """
    Compute one action per instance in the union of the desired and actual sets.

    Args:
        desired: Specs of the instances that should be cluster members.
        actual: Every persisted InstanceRecord.
        current_fingerprint: The configuration every Ready record should carry.
        now: Current time (epoch seconds), compared with retry schedules.

    Returns:
        Actions ordered by instance id, NoOps included.
    """
    desired_by_id = {spec.instance_id: spec for spec in desired}
    actual_by_id = {record.instance_id: record for record in actual}

    actions: List[Action] = []
    for instance_id in sorted(set(desired_by_id) | set(actual_by_id)):
        spec = desired_by_id.get(instance_id)
        record = actual_by_id.get(instance_id)
        if record is None and spec is not None:
            actions.append(Action.create(spec))
        elif record is not None and spec is None:
            finished = record.state == BootstrapState.REMOVED and record.terminated
            kind = ActionKind.NOOP if finished else ActionKind.DELETE
            actions.append(Action.for_record(kind, record))
        elif record is not None:
            actions.append(Action.for_record(_matched_kind(record, current_fingerprint, now), record))
    return actions


class FleetController:
    """
    Level-triggered reconciliation of the whole fleet.

    `max_concurrency` bounds the bootstrap steps running at once, not the number
    of workers: every instance with outstanding work has its own worker, and a
    worker holds a slot only while it performs a step.
    """

    def __init__(
        self,
        machine: BootstrapStateMachine,
        source: DesiredStateSource,
        store: RecordStore,
        tracker: ConfigurationVersionTracker,
        max_concurrency: int = 4,
        resync_interval: float = 30.0,
        policy: Optional[BackoffPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.machine = machine
        self.source = source
        self.store = store
        self.tracker = tracker
        self.max_concurrency = max_concurrency
        self.resync_interval = resync_interval
        self.policy = policy or machine.policy
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._inflight: Dict[str, "asyncio.Task[None]"] = {}
        self._pending_delete: Set[str] = set()
        self._wakeup = asyncio.Event()

    def notify(self) -> None:
        """Request a pass as soon as possible (e.g. the desired set changed)."""
        self._wakeup.set()

    def in_flight(self) -> List[str]:
        return sorted(self._inflight)

    async def run_pass(self) -> List[Action]:
        """
        Observe, diff and dispatch once.

        Returns:
            The computed actions (including NoOps and coalesced ones).

        Raises:
            SourceUnavailableError: If the tracker inputs, the desired set or the
                records cannot be read, or while no instance credentials are
                available. Nothing is dispatched in that case.
        """
        fingerprint = await self.tracker.refresh()
        await self.machine.refresh_credentials()
        desired = await self.source.list_desired()
        actual = await self.store.list()

        actions = reconcile(desired, actual, fingerprint, self.clock())
        started = [a for a in actions if self.dispatch(a)]
        if started:
            logger.info(
                "Dispatched %s",
                ", ".join(f"{a.kind.value}({a.instance_id})" for a in started),
            )
        return actions

    def dispatch(self, action: Action) -> bool:
        """
        Start a worker for `action` unless one is already running for the instance.

        Returns:
            bool: True if a new worker was started.
        """
        if action.kind == ActionKind.NOOP:
            return False
        instance_id = action.instance_id
        if instance_id in self._inflight:
            if action.kind == ActionKind.DELETE:
                # Picked up by the running worker at its next step boundary
                self._pending_delete.add(instance_id)
            return False
        self._inflight[instance_id] = asyncio.ensure_future(self._worker(action))
        return True

    async def _begin(self, action: Action) -> Optional[InstanceRecord]:
        """Turn an action into the record the worker starts advancing."""
        if action.kind == ActionKind.CREATE:
            if action.spec is None:
                raise ValueError(f"create action for {action.instance_id} carries no spec")
            existing = await self.store.get(action.instance_id)
            if existing is not None:
                return existing
            return await self.machine.create(InstanceRecord.from_spec(action.spec))

        # The action's snapshot may be older than what the last worker persisted
        record = await self.store.get(action.instance_id)
        if record is None:
            return None
        if action.kind == ActionKind.DELETE:
            return await self.machine.begin_teardown(record, Operation.DELETE)
        if action.kind == ActionKind.RECONFIGURE:
            stale = record.state == BootstrapState.READY or record.building_stale(
                self.tracker.current_fingerprint()
            )
            if not stale:
                return record
            logger.info("[%s] configuration is stale; reconfiguring", record.instance_id)
            return await self.machine.begin_teardown(record, Operation.RECONFIGURE)
        if record.state == BootstrapState.FAILED:
            return await self.machine.resume(record)
        return record

    async def _worker(self, action: Action) -> None:
        instance_id = action.instance_id
        try:
            async with self._semaphore:
                record = await self._begin(action)
            while record is not None:
                if instance_id in self._pending_delete:
                    self._pending_delete.discard(instance_id)
                    if record.operation != Operation.DELETE:
                        async with self._semaphore:
                            record = await self.machine.begin_teardown(record, Operation.DELETE)
                        continue
                if self.machine.is_settled(record):
                    break
                if record.next_attempt_at is not None:
                    delay = record.next_attempt_at - self.clock()
                    if delay > 0:
                        await asyncio.sleep(delay)
                async with self._semaphore:
                    record = await self.machine.advance(record)
            if record is not None:
                logger.info("[%s] worker finished in %s", instance_id, record.state.value)
        except Exception:
            logger.exception("[%s] worker for %s crashed", instance_id, action.kind.value)
        finally:
            self._pending_delete.discard(instance_id)
            self._inflight.pop(instance_id, None)

    async def wait_idle(self) -> None:
        """Wait until no worker is in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight workers. Their records resume from the last persisted step."""
        for task in list(self._inflight.values()):
            task.cancel()
        await self.wait_idle()

    async def run(self, stop: asyncio.Event) -> None:
        """
        Re-run passes until `stop` is set: every `resync_interval` seconds, on
        notify(), and with backoff after passes that could not observe the fleet.
        """
        logger.info(
            "Fleet controller started (max_concurrency=%d, resync=%ss)",
            self.max_concurrency,
            self.resync_interval,
        )
        failures = 0
        try:
            while not stop.is_set():
                self._wakeup.clear()
                try:
                    await self.run_pass()
                    failures = 0
                    delay = self.resync_interval
                except SourceUnavailableError as ex:
                    failures += 1
                    delay = self.policy.delay(failures)
                    logger.warning(
                        "Reconciliation pass abandoned (%d in a row), retrying in %.1fs: %s",
                        failures,
                        delay,
                        ex,
                    )
                await wait_any([stop, self._wakeup], delay)
        finally:
            await self.shutdown()
            logger.info("Fleet controller stopped")
