"""
Status transition engine.

The only path a job status may take:

    Unassigned -> Assigned -> OnTheWay -> Arrived -> Completed

``Completed`` is reserved for the completion flow (which records payment
and commission in the same write); a bare status update can never reach it.
Every accepted transition is committed with an optimistic version check.
"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

from app.core.dispatch.domain import (
    SYSTEM_ACTOR,
    Actor,
    Job,
    JobStatus,
    StatusChange,
    utcnow,
)
from app.core.dispatch.errors import InvalidTransition, JobNotFound, StaleWrite
from app.core.dispatch.ports import AsyncJobStore
from app.infra.audit_log import audit_event
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

if TYPE_CHECKING:
    from app.core.dispatch.events import DispatchNotifier

logger = get_logger(__name__)

ALLOWED_NEXT: dict[str, str] = {
    JobStatus.UNASSIGNED.value: JobStatus.ASSIGNED.value,
    JobStatus.ASSIGNED.value: JobStatus.ON_THE_WAY.value,
    JobStatus.ON_THE_WAY.value: JobStatus.ARRIVED.value,
    JobStatus.ARRIVED.value: JobStatus.COMPLETED.value,
}

_TIMESTAMP_FIELD = {
    JobStatus.ASSIGNED.value: "assigned_at",
    JobStatus.ON_THE_WAY.value: "on_the_way_at",
    JobStatus.ARRIVED.value: "arrived_at",
    JobStatus.COMPLETED.value: "completed_at",
}

# Mutation applied to the freshly read job before validation.  It may raise
# a DispatchError to abort the whole operation (nothing is written).
JobMutation = Callable[[Job], Union[None, Awaitable[None]]]


def _status_value(status: Union[JobStatus, str]) -> str:
    try:
        return JobStatus(status).value
    except ValueError:
        raise InvalidTransition(str(status), str(status), f"Unknown status: {status}")


def validate_transition(
    current: Union[JobStatus, str],
    target: Union[JobStatus, str],
    *,
    via_completion: bool = False,
) -> None:
    """Raise InvalidTransition unless ``current -> target`` is an allowed step."""
    current_value = _status_value(current)
    target_value = _status_value(target)

    if ALLOWED_NEXT.get(current_value) != target_value:
        raise InvalidTransition(current_value, target_value)

    if target_value == JobStatus.COMPLETED.value and not via_completion:
        raise InvalidTransition(
            current_value,
            target_value,
            "Jobs are completed by reporting payment, not by a status update",
        )


def apply_transition(job: Job, target: str, *, now: datetime, actor: Actor) -> None:
    """Move ``job`` to ``target`` in memory, stamping timestamp and history."""
    previous = job.status
    job.status = target
    stamp = _TIMESTAMP_FIELD.get(target)
    if stamp and getattr(job, stamp) is None:
        setattr(job, stamp, now)
    job.status_history.append(
        StatusChange(from_status=previous, to_status=target, at=now, actor=str(actor))
    )


def _check_assignment_guard(job: Job, target: str) -> None:
    if target != JobStatus.ASSIGNED.value:
        return
    if job.bidding_open and not job.selected_bid_id:
        raise InvalidTransition(
            job.status, target, "Job is open for bidding; select a bid to assign it",
        )
    if not job.assigned_vendor_id:
        raise InvalidTransition(job.status, target, "Job has no vendor to assign")


class StatusTransitionEngine:
    """Validates and commits job changes with an optimistic version check."""

    def __init__(
        self,
        store: AsyncJobStore,
        notifier: Optional["DispatchNotifier"] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def update(
        self,
        job_id: str,
        change: JobMutation,
        *,
        expected_version: Optional[int] = None,
        operation: str = "update",
    ) -> Job:
        """
        Read ``job_id``, apply ``change`` and write it back.

        When ``expected_version`` is pinned by the caller a mismatch is
        rejected immediately.  Otherwise a write that loses the race is
        retried once against a fresh read; ``change`` must therefore be
        safe to run again on the newer copy.
        """
        attempts = 1 if expected_version is not None else 2

        for attempt in range(attempts):
            job = await self.store.get(job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")

            if expected_version is not None and job.version != expected_version:
                DispatchMetrics.stale_write(operation)
                raise StaleWrite(job_id, expected_version)

            read_version = job.version
            result = change(job)
            if result is not None:
                await result

            try:
                return await self.store.save(job, expected_version=read_version)
            except StaleWrite:
                DispatchMetrics.stale_write(operation)
                if attempt + 1 >= attempts:
                    raise
                logger.info(
                    "Stale write on job %s during %s (version %s), retrying once",
                    job_id, operation, read_version,
                    extra={"job_id": job_id},
                )

        raise StaleWrite(job_id, expected_version or 0)

    async def advance(
        self,
        job_id: str,
        target: Union[JobStatus, str],
        *,
        actor: Actor = SYSTEM_ACTOR,
        expected_version: Optional[int] = None,
        mutate: Optional[JobMutation] = None,
        via_completion: bool = False,
    ) -> Job:
        """
        Move ``job_id`` to ``target``.

        ``mutate`` runs on the freshly read job before validation (bid
        selection, completion bookkeeping) so the whole change lands in one
        versioned write.
        """
        target_value = _status_value(target)
        previous: dict[str, str] = {}

        async def change(job: Job) -> None:
            previous["status"] = job.status
            if mutate is not None:
                result = mutate(job)
                if result is not None:
                    await result
            try:
                validate_transition(job.status, target_value, via_completion=via_completion)
                _check_assignment_guard(job, target_value)
            except InvalidTransition as exc:
                DispatchMetrics.transition_rejected(f"{exc.current}->{exc.target}")
                raise
            apply_transition(job, target_value, now=self._clock(), actor=actor)

        saved = await self.update(
            job_id, change, expected_version=expected_version, operation="advance",
        )

        DispatchMetrics.status_changed(target_value)
        logger.info(
            "Job %s: %s -> %s by %s",
            job_id, previous["status"], target_value, actor,
            extra={"job_id": job_id},
        )
        audit_event(
            "job.status",
            job_id=job_id,
            actor=str(actor),
            detail=f"{previous['status']}->{target_value}",
            extra={"version": saved.version},
        )
        if self.notifier is not None:
            await self.notifier.status_changed(saved, previous["status"])
        return saved
