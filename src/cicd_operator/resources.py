"""Cluster-side resources reconciled by the operator.

These mirror the objects kept in the cluster's resource store. Unlike the git
models they are mutable: a reconcile pass edits a working copy and persists it
with a single patch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Literal


JobState = Literal["Pending", "Running", "Completed", "Failed"]
ConditionStatus = Literal["True", "False", "Unknown"]

JOB_STATE_PENDING: JobState = "Pending"
JOB_STATE_RUNNING: JobState = "Running"
JOB_STATE_COMPLETED: JobState = "Completed"
JOB_STATE_FAILED: JobState = "Failed"

FINALIZER = "cicd-operator/finalizer"

CONDITION_READY = "ready"
CONDITION_WEBHOOK_REGISTERED = "webhook-registered"
CONDITION_SUCCEEDED = "Succeeded"

DEFAULT_API_URLS = {
    "github": "https://api.github.com",
    "gitlab": "https://gitlab.com",
}


@dataclass
class ObjectMeta:
    name: str
    namespace: str
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime | None = None
    creation_timestamp: datetime | None = None
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: int = 0


@dataclass
class Condition:
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(conditions: list[Condition], condition: Condition) -> None:
    for index, existing in enumerate(conditions):
        if existing.type == condition.type:
            conditions[index] = condition
            return
    conditions.append(condition)


@dataclass
class GitConfig:
    type: str
    repository: str
    api_url: str = ""
    token: str | None = None
    tls_verify: bool = True

    def effective_api_url(self) -> str:
        if self.api_url:
            return self.api_url.rstrip("/")
        return DEFAULT_API_URLS.get(self.type, "")


@dataclass
class IntegrationConfigSpec:
    git: GitConfig
    webhook_secret: str | None = None


@dataclass
class IntegrationConfigStatus:
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class IntegrationConfig:
    KIND: ClassVar[str] = "IntegrationConfig"

    metadata: ObjectMeta
    spec: IntegrationConfigSpec
    status: IntegrationConfigStatus = field(default_factory=IntegrationConfigStatus)


@dataclass
class JobRefs:
    repository: str
    base_ref: str
    head_sha: str
    head_ref: str = ""
    pull_request_id: int | None = None
    sender: str = ""
    link: str = ""


@dataclass
class IntegrationJobSpec:
    config_ref: str
    id: str
    refs: JobRefs
    tasks: tuple[str, ...] = ()


@dataclass
class JobTaskStatus:
    name: str
    state: JobState
    message: str = ""
    start_time: datetime | None = None
    completion_time: datetime | None = None


@dataclass
class IntegrationJobStatus:
    state: JobState | None = None
    message: str = ""
    start_time: datetime | None = None
    completion_time: datetime | None = None
    jobs: list[JobTaskStatus] = field(default_factory=list)

    def set_defaults(self) -> None:
        if self.state is None:
            self.state = JOB_STATE_PENDING


@dataclass
class IntegrationJob:
    KIND: ClassVar[str] = "IntegrationJob"

    metadata: ObjectMeta
    spec: IntegrationJobSpec
    status: IntegrationJobStatus = field(default_factory=IntegrationJobStatus)


@dataclass
class TaskRunStatus:
    name: str
    succeeded: ConditionStatus = "Unknown"
    reason: str = ""
    message: str = ""
    start_time: datetime | None = None
    completion_time: datetime | None = None


@dataclass
class PipelineRunSpec:
    job_name: str
    head_sha: str
    tasks: tuple[str, ...] = ()


@dataclass
class PipelineRunStatus:
    conditions: list[Condition] = field(default_factory=list)
    start_time: datetime | None = None
    completion_time: datetime | None = None
    task_runs: list[TaskRunStatus] = field(default_factory=list)


@dataclass
class PipelineRun:
    KIND: ClassVar[str] = "PipelineRun"

    metadata: ObjectMeta
    spec: PipelineRunSpec
    status: PipelineRunStatus = field(default_factory=PipelineRunStatus)
