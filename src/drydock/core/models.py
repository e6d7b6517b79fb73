"""Persistent models for scheduler and fleet state.

These are the documents written to ``daemon-state.json`` and
``fleet-state.json``.  They round-trip through ``model_dump(mode="json")``
and ``model_validate`` without loss.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from drydock.core.failures import FailureClass
from drydock.exceptions import InvalidTransitionError
from drydock.utils.time import utc_now

STATE_VERSION = 1
COMPLETED_HISTORY_LIMIT = 500
FAILURE_HISTORY_LIMIT = 100


class JobStatus(str, Enum):
    """Lifecycle of a job.  Moves only forward."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPriority(str, Enum):
    """Which admission lane a job occupies."""

    NORMAL = "normal"
    PRIORITY = "priority"


_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.ACTIVE, JobStatus.FAILED}),
    JobStatus.ACTIVE: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def new_job_id(external_ref: int, attempt: int) -> str:
    return f"{external_ref}-{attempt}-{uuid.uuid4().hex[:8]}"


class Job(BaseModel):
    """One scheduled unit of work tied to a tracker issue."""

    id: str = Field(description="Opaque job identifier, unique per attempt")
    external_ref: int = Field(description="Tracker issue number")
    title: str = Field(default="")
    process_handle: int | None = Field(
        default=None,
        description="PID of the job's agent process while it runs",
    )
    workspace_path: str | None = Field(default=None)
    branch: str | None = Field(default=None)
    template: str = Field(default="autonomous")
    model: str | None = Field(default=None)
    status: JobStatus = Field(default=JobStatus.QUEUED)
    priority: JobPriority = Field(default=JobPriority.NORMAL)
    labels: list[str] = Field(default_factory=list)
    attempt: int = Field(default=0, ge=0)
    worker_slot: int | None = Field(default=None)
    enqueued_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = Field(default=None)
    finished_at: datetime | None = Field(default=None)
    resume_after: datetime | None = Field(
        default=None,
        description="A queued retry is not admitted before this time",
    )
    failure_class: FailureClass | None = Field(default=None)

    @classmethod
    def create(
        cls,
        external_ref: int,
        *,
        title: str = "",
        labels: list[str] | None = None,
        template: str = "autonomous",
        model: str | None = None,
        attempt: int = 0,
        resume_after: datetime | None = None,
    ) -> Job:
        return cls(
            id=new_job_id(external_ref, attempt),
            external_ref=external_ref,
            title=title,
            labels=list(labels or []),
            template=template,
            model=model,
            attempt=attempt,
            resume_after=resume_after,
        )

    def transition(self, new_status: JobStatus) -> None:
        """Move to ``new_status`` or raise InvalidTransitionError."""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"job {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        self.status = new_status
        now = utc_now()
        if new_status is JobStatus.ACTIVE:
            self.started_at = now
        elif new_status.terminal:
            self.finished_at = now

    def ready(self, now: datetime) -> bool:
        """Whether a queued job's retry delay has elapsed."""
        return self.resume_after is None or self.resume_after <= now

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class FailureEvent(BaseModel):
    """One entry in a repository's failure history."""

    timestamp: datetime = Field(default_factory=utc_now)
    failure_class: FailureClass
    job_id: str | None = None
    external_ref: int | None = None


class SchedulerState(BaseModel):
    """Durable per-repository scheduler state (``daemon-state.json``)."""

    version: int = Field(default=STATE_VERSION)
    pid: int | None = Field(default=None)
    started_at: datetime | None = Field(default=None)
    last_poll: datetime | None = Field(default=None)
    active_jobs: list[Job] = Field(default_factory=list)
    queued: list[Job] = Field(default_factory=list)
    completed: list[Job] = Field(
        default_factory=list,
        description=f"Terminal jobs, newest last, capped at {COMPLETED_HISTORY_LIMIT}",
    )
    failure_history: list[FailureEvent] = Field(
        default_factory=list,
        description=f"Newest last, capped at {FAILURE_HISTORY_LIMIT}",
    )
    paused_until: datetime | None = Field(
        default=None,
        description="Admission is paused until this time after repeated same-class failures",
    )
    titles: dict[str, str] = Field(default_factory=dict)

    # ─── Queries ─────────────────────────────────────────────────────

    def is_inflight(self, external_ref: int) -> bool:
        """Whether the issue is already active or queued."""
        return any(
            job.external_ref == external_ref
            for job in (*self.active_jobs, *self.queued)
        )

    @property
    def active_count(self) -> int:
        return len(self.active_jobs)

    @property
    def active_priority_count(self) -> int:
        return sum(1 for job in self.active_jobs if job.priority is JobPriority.PRIORITY)

    def occupied_slots(self) -> set[int]:
        return {job.worker_slot for job in self.active_jobs if job.worker_slot is not None}

    def next_free_slot(self) -> int:
        occupied = self.occupied_slots()
        slot = 0
        while slot in occupied:
            slot += 1
        return slot

    # ─── Mutations ───────────────────────────────────────────────────

    def enqueue(self, job: Job) -> bool:
        """Append to the FIFO queue unless the issue is already inflight."""
        if self.is_inflight(job.external_ref):
            return False
        self.queued.append(job)
        return True

    def archive(self, job: Job) -> None:
        """Remove a terminal job from the live lists and append it to history."""
        self.active_jobs = [j for j in self.active_jobs if j.id != job.id]
        self.queued = [j for j in self.queued if j.id != job.id]
        self.completed.append(job)
        if len(self.completed) > COMPLETED_HISTORY_LIMIT:
            self.completed = self.completed[-COMPLETED_HISTORY_LIMIT:]

    def record_failure(self, event: FailureEvent) -> bool:
        """Append a FailureEvent once per job; returns False on a duplicate."""
        if event.job_id is not None and any(
            e.job_id == event.job_id for e in self.failure_history
        ):
            return False
        self.failure_history.append(event)
        if len(self.failure_history) > FAILURE_HISTORY_LIMIT:
            self.failure_history = self.failure_history[-FAILURE_HISTORY_LIMIT:]
        return True


class FleetRepoEntry(BaseModel):
    """One repository session started by the fleet orchestrator."""

    path: str
    session: str
    pid: int | None = None
    template: str = "autonomous"
    max_parallel: int = 2
    started_at: datetime = Field(default_factory=utc_now)


class FleetState(BaseModel):
    """Fleet bookkeeping (``fleet-state.json``)."""

    started_at: datetime = Field(default_factory=utc_now)
    repos: dict[str, FleetRepoEntry] = Field(default_factory=dict)
    rebalancer_pid: int | None = None
    distributed_loop_pid: int | None = None


__all__ = [
    "COMPLETED_HISTORY_LIMIT",
    "FAILURE_HISTORY_LIMIT",
    "FailureEvent",
    "FleetRepoEntry",
    "FleetState",
    "Job",
    "JobPriority",
    "JobStatus",
    "STATE_VERSION",
    "SchedulerState",
    "new_job_id",
]
