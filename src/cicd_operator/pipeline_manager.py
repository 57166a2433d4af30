"""Pipeline Status Reflector.

Maps the execution-engine run that belongs to a job (or its absence) onto the
job's status. Nothing here persists; the caller writes the status back once per
reconcile pass.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging

from cicd_operator.git_client import GitClientFactory
from cicd_operator.models import CommitStatus, CommitStatusState
from cicd_operator.observability import log_event, log_warning
from cicd_operator.resources import (
    CONDITION_SUCCEEDED,
    JOB_STATE_COMPLETED,
    JOB_STATE_FAILED,
    JOB_STATE_PENDING,
    JOB_STATE_RUNNING,
    IntegrationConfig,
    IntegrationJob,
    JobState,
    JobTaskStatus,
    ObjectMeta,
    PipelineRun,
    PipelineRunSpec,
    find_condition,
)


LOGGER = logging.getLogger("cicd_operator.pipeline_manager")

DEFAULT_STATUS_CONTEXT = "cicd-operator/pipeline"
_TERMINAL_STATES: frozenset[JobState] = frozenset({JOB_STATE_COMPLETED, JOB_STATE_FAILED})
_COMMIT_STATES: dict[JobState, CommitStatusState] = {
    JOB_STATE_PENDING: "pending",
    JOB_STATE_RUNNING: "pending",
    JOB_STATE_COMPLETED: "success",
    JOB_STATE_FAILED: "failure",
}
_COMMIT_DESCRIPTIONS: dict[JobState, str] = {
    JOB_STATE_PENDING: "Job is pending",
    JOB_STATE_RUNNING: "Job is running",
    JOB_STATE_COMPLETED: "Job succeeded",
    JOB_STATE_FAILED: "Job failed",
}


def pipeline_run_name(job: IntegrationJob) -> str:
    return job.metadata.name


class PipelineManager:
    def __init__(
        self,
        git_client_factory: GitClientFactory | None = None,
        *,
        status_context: str = DEFAULT_STATUS_CONTEXT,
    ) -> None:
        self._git_client_factory = git_client_factory
        self._status_context = status_context

    def generate(self, job: IntegrationJob, config: IntegrationConfig) -> PipelineRun:
        """Build the run the scheduler creates when it admits ``job``."""
        return PipelineRun(
            metadata=ObjectMeta(
                name=pipeline_run_name(job),
                namespace=job.metadata.namespace,
                labels={
                    "cicd-operator/job": job.metadata.name,
                    "cicd-operator/config": config.metadata.name,
                },
            ),
            spec=PipelineRunSpec(
                job_name=job.metadata.name,
                head_sha=job.spec.refs.head_sha,
                tasks=job.spec.tasks,
            ),
        )

    def reflect_status(
        self,
        run: PipelineRun | None,
        job: IntegrationJob,
        config: IntegrationConfig,
    ) -> None:
        status = job.status
        previous_state = status.state
        status.set_defaults()

        if run is None:
            if status.state == JOB_STATE_RUNNING:
                status.state = JOB_STATE_FAILED
                status.message = "PipelineRun is deleted"
        else:
            self._reflect_run(run, job)

        if status.state in _TERMINAL_STATES and status.completion_time is None:
            status.completion_time = datetime.now(timezone.utc)

        if status.state != previous_state:
            log_event(
                LOGGER,
                "job_state_changed",
                job=job.metadata.name,
                previous_state=previous_state,
                state=status.state,
            )
            self._report_commit_status(job, config)

    def _reflect_run(self, run: PipelineRun, job: IntegrationJob) -> None:
        status = job.status
        succeeded = find_condition(run.status.conditions, CONDITION_SUCCEEDED)
        if succeeded is None or succeeded.status == "Unknown":
            status.state = JOB_STATE_RUNNING
        elif succeeded.status == "True":
            status.state = JOB_STATE_COMPLETED
        else:
            status.state = JOB_STATE_FAILED
        if succeeded is not None and succeeded.message:
            status.message = succeeded.message

        status.start_time = run.status.start_time or status.start_time
        if run.status.completion_time is not None:
            status.completion_time = run.status.completion_time

        tasks: list[JobTaskStatus] = []
        for task_run in run.status.task_runs:
            if task_run.succeeded == "True":
                task_state: JobState = JOB_STATE_COMPLETED
            elif task_run.succeeded == "False":
                task_state = JOB_STATE_FAILED
            else:
                task_state = JOB_STATE_RUNNING
            tasks.append(
                JobTaskStatus(
                    name=task_run.name,
                    state=task_state,
                    message=task_run.message,
                    start_time=task_run.start_time,
                    completion_time=task_run.completion_time,
                )
            )
        status.jobs = tasks

    def _report_commit_status(self, job: IntegrationJob, config: IntegrationConfig) -> None:
        state = job.status.state
        if self._git_client_factory is None or state is None or not job.spec.refs.head_sha:
            return
        if config.spec.git.token is None:
            return
        commit_status = CommitStatus(
            context=self._status_context,
            state=_COMMIT_STATES[state],
            description=job.status.message or _COMMIT_DESCRIPTIONS[state],
            target_url=job.spec.refs.link,
        )
        try:
            git_client = self._git_client_factory(config)
            git_client.set_commit_status(job.spec.refs.head_sha, commit_status)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "commit_status_failed",
                job=job.metadata.name,
                sha=job.spec.refs.head_sha,
                state=commit_status.state,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        log_event(
            LOGGER,
            "commit_status_reported",
            job=job.metadata.name,
            sha=job.spec.refs.head_sha,
            state=commit_status.state,
        )
