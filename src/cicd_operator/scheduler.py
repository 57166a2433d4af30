from __future__ import annotations

from datetime import datetime, timezone
import logging
import threading
from typing import Protocol

from cicd_operator.cluster import (
    ClusterClient,
    ConflictError,
    ResourceKey,
    ResourceNotFoundError,
)
from cicd_operator.observability import log_event, log_warning
from cicd_operator.pipeline_manager import PipelineManager, pipeline_run_name
from cicd_operator.resources import (
    JOB_STATE_PENDING,
    JOB_STATE_RUNNING,
    IntegrationConfig,
    IntegrationJob,
    PipelineRun,
)


LOGGER = logging.getLogger("cicd_operator.scheduler")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Scheduler(Protocol):
    def notify(self, job: IntegrationJob) -> None:
        """Ask the scheduler to re-evaluate its queue; never blocks on scheduling work."""
        ...


class FifoScheduler:
    """Admits pending jobs oldest first while fewer than ``max_pipeline_runs`` are active.

    All decisions are derived from the resource store on every pass, so repeated
    notifications for the same job (including deleted or finished ones) are
    harmless.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        pipeline_manager: PipelineManager,
        *,
        max_pipeline_runs: int,
        idle_poll_seconds: float = 30.0,
    ) -> None:
        if max_pipeline_runs < 1:
            raise ValueError("max_pipeline_runs must be >= 1")
        self._cluster = cluster
        self._pipeline_manager = pipeline_manager
        self._max_pipeline_runs = max_pipeline_runs
        self._idle_poll_seconds = idle_poll_seconds
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._schedule_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def notify(self, job: IntegrationJob) -> None:
        log_event(
            LOGGER,
            "scheduler_notified",
            job=f"{job.metadata.namespace}/{job.metadata.name}",
            state=job.status.state,
            deleting=job.metadata.deletion_timestamp is not None,
        )
        self._wake.set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="fifo-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def schedule_once(self) -> int:
        """Run one admission pass synchronously and return how many runs were created."""
        with self._schedule_lock:
            jobs = self._cluster.list(IntegrationJob)
            runs = self._cluster.list(PipelineRun)
            live_jobs = {
                ResourceKey.of(job): job
                for job in jobs
                if job.metadata.deletion_timestamp is None
            }

            run_keys: set[ResourceKey] = set()
            for run in runs:
                job_key = ResourceKey(run.metadata.namespace, run.spec.job_name)
                if job_key not in live_jobs:
                    self._cancel(run)
                    continue
                run_keys.add(job_key)

            active = 0
            candidates: list[IntegrationJob] = []
            for key, job in live_jobs.items():
                if job.status.completion_time is not None:
                    continue
                if key in run_keys or job.status.state == JOB_STATE_RUNNING:
                    active += 1
                elif job.status.state in {None, JOB_STATE_PENDING}:
                    candidates.append(job)

            candidates.sort(
                key=lambda job: (
                    job.metadata.creation_timestamp or _EPOCH,
                    job.metadata.namespace,
                    job.metadata.name,
                )
            )

            created = 0
            for job in candidates:
                if active >= self._max_pipeline_runs:
                    break
                if self._admit(job):
                    active += 1
                    created += 1

            log_event(
                LOGGER,
                "scheduler_pass",
                active=active,
                created=created,
                waiting=len(candidates) - created,
                max_pipeline_runs=self._max_pipeline_runs,
            )
            return created

    def _admit(self, job: IntegrationJob) -> bool:
        config_key = ResourceKey(job.metadata.namespace, job.spec.config_ref)
        try:
            config = self._cluster.get(IntegrationConfig, config_key)
        except ResourceNotFoundError as exc:
            log_warning(LOGGER, "scheduler_config_missing", job=job.metadata.name, error=str(exc))
            return False

        run = self._pipeline_manager.generate(job, config)
        try:
            self._cluster.create(run)
        except ConflictError:
            # Created by an earlier pass that did not observe it yet.
            return True
        log_event(
            LOGGER,
            "pipeline_run_created",
            job=f"{job.metadata.namespace}/{job.metadata.name}",
            run=pipeline_run_name(job),
        )
        return True

    def _cancel(self, run: PipelineRun) -> None:
        try:
            self._cluster.delete(PipelineRun, ResourceKey.of(run))
        except ResourceNotFoundError:
            return
        log_event(
            LOGGER,
            "pipeline_run_cancelled",
            run=f"{run.metadata.namespace}/{run.metadata.name}",
            job=run.spec.job_name,
        )

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wake.wait(self._idle_poll_seconds)
            self._wake.clear()
            if self._stopping.is_set():
                break
            try:
                self.schedule_once()
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "scheduler_pass_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
