from __future__ import annotations

from collections.abc import Iterator
import json
import logging

import pytest

from cicd_operator.cluster import InMemoryCluster, ResourceKey
from cicd_operator.config import OperatorConfig
from cicd_operator.fake_git import FakeGitStore
from cicd_operator.github_client import GitHubClient
from cicd_operator.models import BranchRef, PullRequest, User
from cicd_operator.resources import (
    CONDITION_SUCCEEDED,
    Condition,
    GitConfig,
    IntegrationConfig,
    IntegrationConfigSpec,
    IntegrationJob,
    IntegrationJobSpec,
    JobRefs,
    ObjectMeta,
    PipelineRun,
)
from cicd_operator.runtime import build_runtime


@pytest.fixture(autouse=True)
def restore_operator_logger_state() -> Iterator[None]:
    logger = logging.getLogger("cicd_operator")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def _store() -> FakeGitStore:
    store = FakeGitStore()
    repo = store.add_repo("o/r")
    repo.pull_requests[42] = PullRequest(
        id=42,
        title="Fix bug",
        state="open",
        author=User(1, "alice"),
        url="https://github.com/o/r/pull/42",
        base=BranchRef("main", "base"),
        head=BranchRef("feature", "abc123"),
    )
    repo.user_can_write["bob"] = True
    return store


def _cluster() -> InMemoryCluster:
    cluster = InMemoryCluster()
    cluster.create(
        IntegrationConfig(
            metadata=ObjectMeta(name="ic", namespace="ns"),
            spec=IntegrationConfigSpec(git=GitConfig(type="fake", repository="o/r", token="tkn")),
        )
    )
    cluster.create(
        IntegrationJob(
            metadata=ObjectMeta(name="job-1", namespace="ns"),
            spec=IntegrationJobSpec(
                config_ref="ic",
                id="abc",
                refs=JobRefs(
                    repository="o/r", base_ref="main", head_sha="abc123", pull_request_id=42
                ),
            ),
        )
    )
    return cluster


def test_reconcile_all_drives_config_and_job_to_completion() -> None:
    store = _store()
    cluster = _cluster()
    runtime = build_runtime(
        OperatorConfig(external_hostname="cicd-webhook.com", bot_name="tmax"),
        cluster,
        fake_store=store,
    )

    runtime.reconcile_all()
    runtime.reconcile_all()
    runtime.reconcile_all()

    assert [entry.url for entry in store.repos["o/r"].webhooks.values()] == [
        "http://cicd-webhook.com/webhook/ns/ic"
    ]
    assert runtime.scheduler.schedule_once() == 1
    run = cluster.get(PipelineRun, ResourceKey("ns", "job-1"))

    results = runtime.reconcile_all()
    assert set(results) == {"IntegrationConfig/ns/ic", "IntegrationJob/ns/job-1"}
    assert cluster.get(IntegrationJob, ResourceKey("ns", "job-1")).status.state == "Running"

    run.status.conditions.append(Condition(type=CONDITION_SUCCEEDED, status="True"))
    cluster.patch_status(run)
    runtime.reconcile_all()

    assert cluster.get(IntegrationJob, ResourceKey("ns", "job-1")).status.state == "Completed"
    statuses = store.repos["o/r"].commit_statuses["abc123"]
    assert [(status.context, status.state) for status in statuses] == [
        ("tmax/pipeline", "pending"),
        ("tmax/pipeline", "success"),
    ]


def test_dispatcher_routes_approve_commands() -> None:
    store = _store()
    cluster = _cluster()
    runtime = build_runtime(
        OperatorConfig(external_hostname="cicd-webhook.com"), cluster, fake_store=store
    )
    body = json.dumps(
        {
            "action": "created",
            "repository": {"full_name": "o/r", "html_url": "https://github.com/o/r"},
            "sender": {"id": 2, "login": "bob"},
            "issue": {
                "number": 42,
                "state": "open",
                "user": {"id": 1, "login": "alice"},
                "pull_request": {},
            },
            "comment": {"id": 5, "body": "/ci-approve", "user": {"id": 2, "login": "bob"}},
        }
    ).encode()

    runtime.dispatcher.handle_raw(
        {"X-GitHub-Event": "issue_comment"},
        body,
        cluster.get(IntegrationConfig, ResourceKey("ns", "ic")),
    )

    labels = [label.name for label in store.repos["o/r"].pull_requests[42].labels]
    assert labels == ["approved"]


def test_start_and_stop_manage_scheduler_thread() -> None:
    runtime = build_runtime(
        OperatorConfig(external_hostname="cicd-webhook.com"), _cluster(), fake_store=_store()
    )
    runtime.start()
    runtime.stop()


def test_stop_closes_pooled_http_clients() -> None:
    runtime = build_runtime(OperatorConfig(external_hostname="cicd-webhook.com"), _cluster())
    client = runtime.git_clients(
        IntegrationConfig(
            metadata=ObjectMeta(name="gh", namespace="ns"),
            spec=IntegrationConfigSpec(git=GitConfig(type="github", repository="o/r")),
        )
    )
    runtime.start()
    runtime.stop()

    assert isinstance(client, GitHubClient)
    assert client._http.is_closed
