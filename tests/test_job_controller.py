from __future__ import annotations

from datetime import datetime, timezone

import pytest

from cicd_operator.cluster import ClusterError, InMemoryCluster, ResourceKey
from cicd_operator.job_controller import IntegrationJobReconciler
from cicd_operator.pipeline_manager import PipelineManager
from cicd_operator.resources import (
    CONDITION_SUCCEEDED,
    FINALIZER,
    Condition,
    GitConfig,
    IntegrationConfig,
    IntegrationConfigSpec,
    IntegrationJob,
    IntegrationJobSpec,
    JobRefs,
    ObjectMeta,
    PipelineRun,
    PipelineRunSpec,
)

KEY = ResourceKey("ns", "job-1")


class _RecordingScheduler:
    def __init__(self) -> None:
        self.notified: list[str] = []
        self.states: list[str | None] = []

    def notify(self, job: IntegrationJob) -> None:
        self.notified.append(job.metadata.name)
        self.states.append(job.status.state)


class _ExplodingManager(PipelineManager):
    def reflect_status(
        self, run: PipelineRun | None, job: IntegrationJob, config: IntegrationConfig
    ) -> None:
        raise RuntimeError("reflect exploded")


def _setup(
    *, finalizers: list[str] | None = None, with_config: bool = True
) -> tuple[InMemoryCluster, _RecordingScheduler, IntegrationJobReconciler]:
    cluster = InMemoryCluster()
    if with_config:
        cluster.create(
            IntegrationConfig(
                metadata=ObjectMeta(name="ic", namespace="ns"),
                spec=IntegrationConfigSpec(git=GitConfig(type="fake", repository="o/r")),
            )
        )
    cluster.create(
        IntegrationJob(
            metadata=ObjectMeta(
                name="job-1",
                namespace="ns",
                finalizers=[FINALIZER] if finalizers is None else list(finalizers),
            ),
            spec=IntegrationJobSpec(
                config_ref="ic",
                id="abc",
                refs=JobRefs(repository="o/r", base_ref="main", head_sha="abc123"),
            ),
        )
    )
    scheduler = _RecordingScheduler()
    reconciler = IntegrationJobReconciler(
        cluster, scheduler=scheduler, pipeline_manager=PipelineManager()
    )
    return cluster, scheduler, reconciler


def _job(cluster: InMemoryCluster) -> IntegrationJob:
    return cluster.get(IntegrationJob, KEY)


def test_first_pass_only_adds_finalizer() -> None:
    cluster, scheduler, reconciler = _setup(finalizers=[])

    reconciler.reconcile(KEY)

    assert _job(cluster).metadata.finalizers == [FINALIZER]
    assert cluster.count("patch", IntegrationJob) == 1
    assert cluster.count("patch_status", IntegrationJob) == 0
    assert scheduler.notified == []

    reconciler.reconcile(KEY)
    assert _job(cluster).metadata.finalizers == [FINALIZER]
    assert cluster.count("patch", IntegrationJob) == 1


def test_pending_job_status_is_defaulted_and_scheduler_notified() -> None:
    cluster, scheduler, reconciler = _setup()

    reconciler.reconcile(KEY)

    assert _job(cluster).status.state == "Pending"
    assert cluster.count("patch_status", IntegrationJob) == 1
    assert scheduler.notified == ["job-1"]


def test_run_progress_is_reflected() -> None:
    cluster, _, reconciler = _setup()
    cluster.create(
        PipelineRun(
            metadata=ObjectMeta(name="job-1", namespace="ns"),
            spec=PipelineRunSpec(job_name="job-1", head_sha="abc123"),
        )
    )

    reconciler.reconcile(KEY)
    assert _job(cluster).status.state == "Running"

    run = cluster.get(PipelineRun, KEY)
    run.status.conditions.append(Condition(type=CONDITION_SUCCEEDED, status="True"))
    cluster.patch_status(run)

    reconciler.reconcile(KEY)
    job = _job(cluster)
    assert job.status.state == "Completed"
    assert job.status.completion_time is not None


def test_completed_job_is_skipped() -> None:
    cluster, scheduler, reconciler = _setup()
    job = _job(cluster)
    job.status.state = "Completed"
    job.status.completion_time = datetime(2024, 5, 1, tzinfo=timezone.utc)
    cluster.patch_status(job)
    before = cluster.count("patch_status", IntegrationJob)

    reconciler.reconcile(KEY)

    assert cluster.count("patch_status", IntegrationJob) == before
    assert scheduler.notified == []


def test_deletion_removes_finalizer_and_notifies_once() -> None:
    cluster, scheduler, reconciler = _setup()
    cluster.delete(IntegrationJob, KEY)

    reconciler.reconcile(KEY)

    assert cluster.list(IntegrationJob) == []
    assert scheduler.notified == ["job-1"]

    reconciler.reconcile(KEY)
    assert scheduler.notified == ["job-1"]


def test_finalizer_removal_keeps_other_finalizers_in_order() -> None:
    cluster, scheduler, reconciler = _setup(finalizers=["a", FINALIZER, "b"])
    cluster.delete(IntegrationJob, KEY)

    reconciler.reconcile(KEY)

    assert _job(cluster).metadata.finalizers == ["a", "b"]
    assert scheduler.notified == ["job-1"]


def test_deleting_completed_job_still_notifies_once() -> None:
    cluster, scheduler, reconciler = _setup()
    job = _job(cluster)
    job.status.state = "Completed"
    job.status.completion_time = datetime(2024, 5, 1, tzinfo=timezone.utc)
    cluster.patch_status(job)
    cluster.delete(IntegrationJob, KEY)

    reconciler.reconcile(KEY)
    reconciler.reconcile(KEY)

    assert cluster.list(IntegrationJob) == []
    assert scheduler.notified == ["job-1"]
    assert scheduler.states == ["Completed"]


def test_deleting_job_without_finalizer_is_left_alone() -> None:
    cluster, scheduler, reconciler = _setup(finalizers=["someone-else/finalizer"])
    cluster.delete(IntegrationJob, KEY)
    before = len(cluster.operations)

    reconciler.reconcile(KEY)

    assert len(cluster.operations) == before
    assert scheduler.notified == []


def test_missing_job_is_a_no_op() -> None:
    cluster, scheduler, reconciler = _setup()
    reconciler.reconcile(ResourceKey("ns", "other"))
    assert scheduler.notified == []


def test_missing_config_fails_job_and_still_notifies() -> None:
    cluster, scheduler, reconciler = _setup(with_config=False)

    reconciler.reconcile(KEY)

    job = _job(cluster)
    assert job.status.state == "Failed"
    assert "IntegrationConfig ns/ic not found" in job.status.message
    assert scheduler.notified == ["job-1"]
    assert scheduler.states == ["Failed"]


def test_run_lookup_error_fails_job() -> None:
    cluster, scheduler, reconciler = _setup()
    cluster.inject_error("get", PipelineRun, ClusterError("api down"))

    reconciler.reconcile(KEY)

    job = _job(cluster)
    assert job.status.state == "Failed"
    assert job.status.message == "api down"
    assert scheduler.notified == ["job-1"]


def test_reflect_error_fails_job() -> None:
    cluster, scheduler, _ = _setup()
    reconciler = IntegrationJobReconciler(
        cluster, scheduler=scheduler, pipeline_manager=_ExplodingManager()
    )

    reconciler.reconcile(KEY)

    assert _job(cluster).status.message == "reflect exploded"
    assert _job(cluster).status.state == "Failed"


def test_finalizer_patch_error_fails_job() -> None:
    cluster, _, reconciler = _setup(finalizers=[])
    cluster.inject_error("patch", IntegrationJob, ClusterError("conflict"))

    reconciler.reconcile(KEY)

    job = _job(cluster)
    assert job.status.state == "Failed"
    assert job.status.message == "conflict"
    assert job.metadata.finalizers == []


def test_status_patch_error_propagates_after_notify() -> None:
    cluster, scheduler, reconciler = _setup()
    cluster.inject_error("patch_status", IntegrationJob, ClusterError("write rejected"))

    with pytest.raises(ClusterError, match="write rejected"):
        reconciler.reconcile(KEY)

    assert scheduler.notified == ["job-1"]
