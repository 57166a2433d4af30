"""Job Lifecycle Reconciler.

One ``reconcile`` call is one pass over one IntegrationJob. The surrounding
control loop guarantees passes for the same job never overlap.
"""

from __future__ import annotations

import logging

from cicd_operator.cluster import (
    ClusterClient,
    ReconcileResult,
    ResourceKey,
    ResourceNotFoundError,
)
from cicd_operator.observability import log_event, log_warning, logging_resource_context
from cicd_operator.pipeline_manager import PipelineManager, pipeline_run_name
from cicd_operator.resources import (
    FINALIZER,
    JOB_STATE_FAILED,
    IntegrationConfig,
    IntegrationJob,
    PipelineRun,
)
from cicd_operator.scheduler import Scheduler


LOGGER = logging.getLogger("cicd_operator.job_controller")


class IntegrationJobReconciler:
    def __init__(
        self,
        cluster: ClusterClient,
        *,
        scheduler: Scheduler,
        pipeline_manager: PipelineManager,
    ) -> None:
        self._cluster = cluster
        self._scheduler = scheduler
        self._pipeline_manager = pipeline_manager

    def reconcile(self, key: ResourceKey) -> ReconcileResult:
        with logging_resource_context(IntegrationJob.KIND, key.namespace, key.name):
            return self._reconcile(key)

    def _reconcile(self, key: ResourceKey) -> ReconcileResult:
        try:
            job = self._cluster.get(IntegrationJob, key)
        except ResourceNotFoundError:
            return ReconcileResult()

        try:
            exit_pass = self._handle_finalizer(job)
        except Exception as exc:  # noqa: BLE001
            self._patch_job_failed(job, str(exc))
            return ReconcileResult()
        if exit_pass:
            return ReconcileResult()

        if job.status.completion_time is not None:
            return ReconcileResult()

        try:
            self._reconcile_status(job, key)
        finally:
            self._scheduler.notify(job)
        return ReconcileResult()

    def _reconcile_status(self, job: IntegrationJob, key: ResourceKey) -> None:
        try:
            config = self._cluster.get(
                IntegrationConfig, ResourceKey(key.namespace, job.spec.config_ref)
            )
        except Exception as exc:  # noqa: BLE001
            self._patch_job_failed(job, str(exc))
            return

        run: PipelineRun | None
        try:
            run = self._cluster.get(PipelineRun, ResourceKey(key.namespace, pipeline_run_name(job)))
        except ResourceNotFoundError:
            run = None
        except Exception as exc:  # noqa: BLE001
            self._patch_job_failed(job, str(exc))
            return

        job.status.set_defaults()
        try:
            self._pipeline_manager.reflect_status(run, job, config)
        except Exception as exc:  # noqa: BLE001
            self._patch_job_failed(job, str(exc))
            return

        self._cluster.patch_status(job)
        log_event(
            LOGGER,
            "job_status_patched",
            state=job.status.state,
            run_found=run is not None,
            completed=job.status.completion_time is not None,
        )

    def _handle_finalizer(self, job: IntegrationJob) -> bool:
        """Return True when this pass ends after the finalizer step."""
        finalizers = job.metadata.finalizers
        if FINALIZER not in finalizers:
            if job.metadata.deletion_timestamp is not None:
                return True
            finalizers.append(FINALIZER)
            self._cluster.patch(job)
            log_event(LOGGER, "job_finalizer_added")
            return True

        if job.metadata.deletion_timestamp is not None:
            self._scheduler.notify(job)
            job.metadata.finalizers = [item for item in finalizers if item != FINALIZER]
            self._cluster.patch(job)
            log_event(LOGGER, "job_finalizer_removed")
            return True

        return False

    def _patch_job_failed(self, job: IntegrationJob, message: str) -> None:
        job.status.state = JOB_STATE_FAILED
        job.status.message = message
        log_warning(LOGGER, "job_failed", message=message)
        try:
            self._cluster.patch_status(job)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "job_failed_patch_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
