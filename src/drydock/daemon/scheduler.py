"""Per-repository scheduler loop.

One cycle (:meth:`DaemonScheduler.poll`):

1. re-resolve the layered config, consuming ``reload.flag`` if present
2. skip admission while the scheduler-wide pause is in effect
3. fetch candidate issues carrying the watch label (best-effort)
4. admit, lane-admit, or enqueue each new candidate
5. drain the queue while capacity remains
6. supervise active jobs and reap the finished ones
7. persist state, refresh the machine heartbeat, emit ``daemon.poll``

Every decision is derived from the persisted state, so a crash between
cycles is repaired by :meth:`DaemonScheduler.recover` plus the next poll.
Tracker side effects run before the state commit that records them: a crash
in between repeats idempotent label/comment calls but never records a
failure twice.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from drydock.core.backoff import BackoffPolicy, consecutive_run
from drydock.core.events import EventLog
from drydock.core.failures import FailureClass, FailureSignal, classify, retry_ceiling
from drydock.core.logging import get_logger
from drydock.core.models import FailureEvent, Job, JobPriority, JobStatus, SchedulerState
from drydock.core.paths import REPO_DIR_NAME, RepoPaths
from drydock.daemon.config import SchedulerConfig, resolve_scheduler_config
from drydock.daemon.heartbeat import HeartbeatStore, write_machine_heartbeat
from drydock.daemon.supervisor import ProcessSupervisor
from drydock.daemon.tracker import Issue, IssueTracker
from drydock.daemon.workspace import Workspace, WorkspaceProvider
from drydock.exceptions import ConfigError, SpawnError, StateCorruptionError, TrackerError
from drydock.state.base import StateStore
from drydock.state.json_store import JsonStateStore
from drydock.utils.time import utc_now

_logger = get_logger("daemon.scheduler")

LOG_TAIL_LINES = 200
PROGRESS_FILE = "progress.json"


def render_agent_command(argv: list[str], job: Job) -> list[str]:
    """Substitute job placeholders into the configured agent command."""
    values = {
        "ref": str(job.external_ref),
        "template": job.template,
        "model": job.model or "",
        "workspace": job.workspace_path or "",
        "branch": job.branch or "",
    }
    return [part.format_map(values) for part in argv]


def tail_lines(path: Path, n: int) -> str:
    """Last ``n`` lines of a text file, or "" when it is missing."""
    if n <= 0:
        return ""
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return "".join(deque(f, maxlen=n)).rstrip("\n")
    except FileNotFoundError:
        return ""


def read_progress(workspace: str | None) -> dict[str, Any]:
    """Progress file an agent leaves at ``<workspace>/.drydock/progress.json``."""
    if not workspace:
        return {}
    path = Path(workspace) / REPO_DIR_NAME / PROGRESS_FILE
    try:
        data = json.loads(path.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


class DaemonScheduler:
    """Owns the job lifecycle for one repository.

    Args:
        repo: Repository working copy.
        tracker: Issue tracker adapter.
        supervisor: Starts and observes agent processes.
        workspaces: Creates per-issue worktrees.
        store: Job store; defaults to ``<repo>/.drydock/daemon-state.json``.
        events: Event log; defaults to the machine-wide log.
        config_file: Explicit daemon config replacing ``daemon.yaml``.
        env: Environment for config overrides (defaults to ``os.environ``).
        clock: Injected for tests.
    """

    def __init__(
        self,
        repo: Path,
        *,
        tracker: IssueTracker,
        supervisor: ProcessSupervisor,
        workspaces: WorkspaceProvider,
        store: StateStore[SchedulerState] | None = None,
        events: EventLog | None = None,
        heartbeats: HeartbeatStore | None = None,
        config_file: Path | None = None,
        env: Mapping[str, str] | None = None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = Path(repo).resolve()
        self.paths = RepoPaths(self.repo)
        self.tracker = tracker
        self.supervisor = supervisor
        self.workspaces = workspaces
        self.events = events or EventLog()
        self.heartbeats = heartbeats or HeartbeatStore()
        self.backoff = backoff or BackoffPolicy()
        self._config_file = config_file
        self._env = env
        self._clock = clock

        self.config: SchedulerConfig = resolve_scheduler_config(self.repo, config_file, env)
        self.store: StateStore[SchedulerState] = store or JsonStateStore(
            self.paths.state_file,
            SchedulerState,
            lock_timeout=self.config.state_lock_timeout_seconds,
        )
        self._log = _logger.bind(repo=self.repo.name)
        self._shutdown = False
        self._wake = asyncio.Event()

    # ─── Config ──────────────────────────────────────────────────────

    def reload_config(self) -> SchedulerConfig:
        """Re-resolve all config layers; keep the previous config if invalid."""
        flagged = self.paths.reload_flag.exists()
        if flagged:
            self.paths.reload_flag.unlink(missing_ok=True)
        try:
            new = resolve_scheduler_config(self.repo, self._config_file, self._env)
        except ConfigError as e:
            self._log.error("scheduler.config_invalid", error=str(e))
            return self.config
        if flagged or new != self.config:
            self._log.info(
                "scheduler.config_reloaded",
                flagged=flagged,
                max_parallel=new.max_parallel,
                previous_max_parallel=self.config.max_parallel,
            )
        self.config = new
        return new

    def request_reload(self) -> None:
        """Make the next cycle start now with freshly resolved config."""
        self.paths.root.mkdir(parents=True, exist_ok=True)
        self.paths.reload_flag.touch()
        self._wake.set()

    # ─── Shutdown ────────────────────────────────────────────────────

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown

    def request_shutdown(self) -> None:
        self._shutdown = True
        self._wake.set()

    def _check_shutdown_flag(self) -> None:
        if self.paths.shutdown_flag.exists():
            self.paths.shutdown_flag.unlink(missing_ok=True)
            self._log.info("scheduler.shutdown_flag_seen")
            self.request_shutdown()

    async def shutdown(self) -> None:
        """Terminate every active job's process tree.

        Jobs stay ``active`` in the state file; recovery reconciles them on
        the next start.
        """
        try:
            state = self.store.load()
        except StateCorruptionError:
            self._log.error("scheduler.shutdown_state_unreadable")
            return
        pids = [job.process_handle for job in state.active_jobs if job.process_handle]
        if pids:
            self._log.info("scheduler.terminating_jobs", count=len(pids))
            await asyncio.gather(
                *(
                    self.supervisor.terminate_tree(pid, self.config.shutdown_grace_seconds)
                    for pid in pids
                )
            )
        state.pid = None
        self.store.save(state)
        self._log.info("scheduler.shutdown_complete", terminated=len(pids))

    # ─── Loop ────────────────────────────────────────────────────────

    async def run_loop(self) -> None:
        """Poll until shutdown is requested.  Exceptions propagate to the watchdog."""
        while True:
            self._check_shutdown_flag()
            if self._shutdown:
                return
            await self.poll()
            await self._sleep(self.config.poll_interval_seconds)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early on shutdown or reload requests."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except TimeoutError:
            pass
        self._wake.clear()

    def _commit(self, state: SchedulerState) -> None:
        self.store.save(state)

    def _load(self) -> SchedulerState:
        return self.store.load()

    async def recover(self) -> SchedulerState:
        """Reconcile jobs left ``active`` by a previous run.

        Live processes are adopted; dead ones are reaped, as a success only
        when the supervisor still holds a zero exit code.
        """
        try:
            state = self._load()
        except StateCorruptionError:
            self._log.warning("scheduler.state_corrupt_on_start")
            state = self.store.recover()

        state.pid = os.getpid()
        state.started_at = self._clock()
        for job in list(state.active_jobs):
            pid = job.process_handle
            if pid is not None and self.supervisor.is_alive(pid):
                self._log.info("scheduler.job_adopted", job_id=job.id, issue=job.external_ref, pid=pid)
                continue
            code = self.supervisor.exit_code(pid) if pid is not None else None
            self._log.info(
                "scheduler.job_orphaned",
                job_id=job.id,
                issue=job.external_ref,
                exit_code=code,
            )
            if code == 0:
                await self._handle_success(state, job)
            else:
                await self._handle_failure(state, job, self._failure_signal(job, code))
        self._commit(state)
        return state

    async def poll(self) -> SchedulerState:
        """Run one scheduling cycle and return the committed state."""
        cfg = self.reload_config()
        state = self._load()
        now = self._clock()

        paused = state.paused_until is not None and state.paused_until > now
        if state.paused_until is not None and not paused:
            self._log.info("scheduler.pause_expired")
            state.paused_until = None

        candidates: list[Issue] = []
        if not paused:
            try:
                candidates = await self.tracker.list_candidates(cfg.watch_label)
            except TrackerError as e:
                self._log.warning("scheduler.tracker_unavailable", error=str(e))
            for issue in candidates:
                if issue.title:
                    state.titles[str(issue.number)] = issue.title
            await self._admit_candidates(state, candidates)
            await self._drain_queue(state, now)
        else:
            self._log.debug("scheduler.paused", until=state.paused_until)

        await self._supervise(state, now)

        state.last_poll = now
        self._commit(state)
        write_machine_heartbeat(active_jobs=state.active_count)
        self.events.rotate_if_needed()
        self.events.emit(
            "daemon.poll",
            repo=str(self.repo),
            active=state.active_count,
            queued=len(state.queued),
            candidates=len(candidates),
            max_parallel=cfg.max_parallel,
            paused=paused,
        )
        return state

    # ─── Admission ───────────────────────────────────────────────────

    def _lane_eligible(self, labels: list[str] | tuple[str, ...]) -> bool:
        lane = self.config.priority_lane
        wanted = {label.lower() for label in lane.labels}
        return lane.enabled and any(label.lower() in wanted for label in labels)

    def admission_lane(self, state: SchedulerState, job: Job) -> JobPriority | None:
        """Lane a job would be admitted through now, or None when it must wait."""
        if state.active_count < self.config.max_parallel:
            return JobPriority.NORMAL
        lane = self.config.priority_lane
        if self._lane_eligible(job.labels) and state.active_priority_count < lane.max_extra_slots:
            return JobPriority.PRIORITY
        return None

    async def _admit_candidates(self, state: SchedulerState, candidates: list[Issue]) -> None:
        cfg = self.config
        ordered = sorted(
            candidates,
            key=lambda issue: (not self._lane_eligible(issue.labels), issue.number),
        )
        for issue in ordered:
            if state.is_inflight(issue.number):
                continue
            job = Job.create(
                issue.number,
                title=issue.title,
                labels=list(issue.labels),
                template=cfg.template,
                model=cfg.model,
            )
            lane = self.admission_lane(state, job)
            if lane is None:
                state.enqueue(job)
                self._log.info("scheduler.job_queued", issue=issue.number, queued=len(state.queued))
                continue
            await self._start(state, job, lane)

    async def _drain_queue(self, state: SchedulerState, now: datetime) -> None:
        for job in list(state.queued):
            if not job.ready(now):
                continue
            lane = self.admission_lane(state, job)
            if lane is None:
                continue
            await self._start(state, job, lane)

    async def _start(self, state: SchedulerState, job: Job, lane: JobPriority) -> bool:
        """Create the worktree, spawn the agent, and mark the job active."""
        cfg = self.config
        state.queued = [j for j in state.queued if j.id != job.id]
        job.priority = lane
        job.worker_slot = state.next_free_slot()
        log = self._log.bind(job_id=job.id, issue=job.external_ref)

        try:
            workspace = await self.workspaces.create(job.external_ref, cfg.base_branch)
            job.workspace_path = str(workspace.path)
            job.branch = workspace.branch
            pid = await self.supervisor.spawn(
                render_agent_command(cfg.agent_command, job),
                cwd=workspace.path,
                log_path=self.paths.job_log(job.external_ref),
                env={
                    "DRYDOCK_JOB_ID": job.id,
                    "DRYDOCK_ISSUE": str(job.external_ref),
                    "DRYDOCK_HOME": str(self.heartbeats.directory.parent),
                },
            )
        except SpawnError as e:
            log.error("scheduler.spawn_failed", error=str(e))
            await self._handle_failure(
                state, job, FailureSignal(log_tail=str(e)), failure_class=FailureClass.UNKNOWN,
            )
            return False

        job.process_handle = pid
        job.transition(JobStatus.ACTIVE)
        state.active_jobs.append(job)
        self._commit(state)
        log.info(
            "scheduler.job_admitted",
            pid=pid,
            lane=lane.value,
            slot=job.worker_slot,
            attempt=job.attempt,
        )
        self.events.emit(
            "daemon.spawn",
            repo=str(self.repo),
            issue=job.external_ref,
            job_id=job.id,
            pid=pid,
            template=job.template,
            model=job.model,
            attempt=job.attempt,
            priority=lane.value,
        )
        return True

    # ─── Supervision ─────────────────────────────────────────────────

    async def _supervise(self, state: SchedulerState, now: datetime) -> None:
        health = self.config.health
        for job in list(state.active_jobs):
            pid = job.process_handle
            if pid is None:
                await self._handle_failure(state, job, self._failure_signal(job, None))
                continue

            if self.supervisor.is_alive(pid):
                beat = self.heartbeats.read(job.id)
                if beat is None:
                    continue
                if beat.is_stale(health.stale_timeout_s, now):
                    self._log.warning(
                        "scheduler.job_stuck",
                        job_id=job.id,
                        issue=job.external_ref,
                        heartbeat_age_s=round(beat.age(now)),
                    )
                    await self.supervisor.terminate_tree(pid, self.config.shutdown_grace_seconds)
                    await self._handle_failure(state, job, self._failure_signal(job, None))
                elif beat.is_stale(health.heartbeat_timeout_s, now):
                    self._log.warning(
                        "scheduler.heartbeat_late",
                        job_id=job.id,
                        heartbeat_age_s=round(beat.age(now)),
                    )
                continue

            code = self.supervisor.exit_code(pid)
            if code == 0:
                await self._handle_success(state, job)
            else:
                await self._handle_failure(state, job, self._failure_signal(job, code))

    def _failure_signal(self, job: Job, exit_code: int | None) -> FailureSignal:
        progress = read_progress(job.workspace_path)
        iteration = progress.get("iteration")
        tests_passing = progress.get("tests_passing")
        return FailureSignal(
            log_tail=tail_lines(self.paths.job_log(job.external_ref), LOG_TAIL_LINES),
            exit_code=exit_code,
            iteration=iteration if isinstance(iteration, int) else None,
            tests_passing=tests_passing if isinstance(tests_passing, bool) else None,
        )

    def _finish_process(self, job: Job) -> None:
        if job.process_handle is not None:
            self.supervisor.release(job.process_handle)
        self.heartbeats.clear(job.id)

    # ─── Outcomes ────────────────────────────────────────────────────

    async def _tracker_call(self, action: str, call: Awaitable[None]) -> None:
        try:
            await call
        except TrackerError as e:
            self._log.warning("scheduler.tracker_action_failed", action=action, error=str(e))

    async def _handle_success(self, state: SchedulerState, job: Job) -> None:
        cfg = self.config
        job.transition(JobStatus.COMPLETED)

        number = job.external_ref
        await self._tracker_call(
            "remove_label",
            self.tracker.remove_label(number, cfg.on_success.remove_label or cfg.watch_label),
        )
        if cfg.on_success.add_label:
            await self._tracker_call("add_label", self.tracker.add_label(number, cfg.on_success.add_label))
        if cfg.on_success.close_issue:
            await self._tracker_call("close", self.tracker.close(number))

        state.archive(job)
        state.paused_until = None
        self._commit(state)
        self._finish_process(job)

        self._log.info("scheduler.job_succeeded", job_id=job.id, issue=number, attempt=job.attempt)
        self.events.emit(
            "daemon.reap",
            repo=str(self.repo),
            issue=number,
            job_id=job.id,
            result="success",
            duration_s=round(job.duration_seconds or 0),
            attempt=job.attempt,
            template=job.template,
        )
        if job.workspace_path and job.branch:
            await self.workspaces.remove(Workspace(Path(job.workspace_path), job.branch))

    def next_attempt(self, job: Job, resume_after: datetime | None) -> Job:
        """Build the retry Job, escalating model and template when enabled."""
        cfg = self.config
        attempt = job.attempt + 1
        model, template = job.model, job.template
        if cfg.retry_escalation:
            model = cfg.escalation.model
            if attempt >= 2:
                template = cfg.escalation.template
        return Job.create(
            job.external_ref,
            title=job.title,
            labels=job.labels,
            template=template,
            model=model,
            attempt=attempt,
            resume_after=resume_after,
        )

    async def _handle_failure(
        self,
        state: SchedulerState,
        job: Job,
        signal: FailureSignal,
        *,
        failure_class: FailureClass | None = None,
    ) -> None:
        cfg = self.config
        cls = failure_class or classify(signal)
        now = self._clock()
        job.failure_class = cls
        job.transition(JobStatus.FAILED)
        log = self._log.bind(job_id=job.id, issue=job.external_ref)

        state.record_failure(
            FailureEvent(
                timestamp=now,
                failure_class=cls,
                job_id=job.id,
                external_ref=job.external_ref,
            )
        )
        self.events.emit(
            "daemon.failure_classified",
            repo=str(self.repo),
            issue=job.external_ref,
            job_id=job.id,
            failure_class=cls.value,
            exit_code=signal.exit_code,
        )

        pause = self.backoff.pause_for(state.failure_history, cls)
        resume_after: datetime | None = None
        if pause.total_seconds() > 0:
            resume_after = now + pause
            if state.paused_until is None or state.paused_until < resume_after:
                state.paused_until = resume_after
            run = consecutive_run(state.failure_history, cls)
            log.warning("scheduler.auto_pause", failure_class=cls.value, run_length=run, pause=str(pause))
            self.events.emit(
                "daemon.auto_pause",
                repo=str(self.repo),
                failure_class=cls.value,
                run_length=run,
                minutes=int(pause.total_seconds() // 60),
                until=resume_after.isoformat(),
            )

        ceiling = retry_ceiling(cls, cfg.max_retries)
        retry: Job | None = None
        if not cls.retryable:
            log.warning("scheduler.retry_skipped", failure_class=cls.value)
            self.events.emit(
                "daemon.skip_retry",
                repo=str(self.repo),
                issue=job.external_ref,
                failure_class=cls.value,
            )
        elif job.attempt < ceiling:
            retry = self.next_attempt(job, resume_after)

        if retry is None:
            await self._apply_failure_actions(job, cls)

        state.archive(job)
        if retry is not None:
            state.enqueue(retry)
        self._commit(state)
        self._finish_process(job)

        log.info(
            "scheduler.job_failed",
            failure_class=cls.value,
            attempt=job.attempt,
            ceiling=ceiling,
            retrying=retry is not None,
        )
        self.events.emit(
            "daemon.reap",
            repo=str(self.repo),
            issue=job.external_ref,
            job_id=job.id,
            result="failure",
            failure_class=cls.value,
            duration_s=round(job.duration_seconds or 0),
            attempt=job.attempt,
            template=job.template,
        )
        if retry is not None:
            self.events.emit(
                "daemon.retry",
                repo=str(self.repo),
                issue=job.external_ref,
                attempt=retry.attempt,
                failure_class=cls.value,
                template=retry.template,
                model=retry.model,
                resume_after=resume_after.isoformat() if resume_after else None,
            )

    async def _apply_failure_actions(self, job: Job, cls: FailureClass) -> None:
        cfg = self.config
        number = job.external_ref
        if cfg.on_failure.add_label:
            await self._tracker_call("add_label", self.tracker.add_label(number, cfg.on_failure.add_label))
        await self._tracker_call("remove_label", self.tracker.remove_label(number, cfg.watch_label))
        if cfg.on_failure.comment_lines > 0:
            tail = tail_lines(self.paths.job_log(number), cfg.on_failure.comment_lines)
            body = (
                f"drydock: job failed permanently ({cls.value}) after "
                f"{job.attempt + 1} attempt(s).\n\n"
                f"Last {cfg.on_failure.comment_lines} log lines:\n\n```\n{tail or '(no output)'}\n```"
            )
            await self._tracker_call("comment", self.tracker.comment(number, body))


__all__ = [
    "DaemonScheduler",
    "read_progress",
    "render_agent_command",
    "tail_lines",
]
