from __future__ import annotations

from dataclasses import dataclass
import logging

import httpx

from cicd_operator.approve import COMMAND_TYPES, ApproveHandler
from cicd_operator.chatops import ChatOps
from cicd_operator.cluster import ClusterClient, ReconcileResult, ResourceKey
from cicd_operator.config import OperatorConfig
from cicd_operator.config_controller import IntegrationConfigReconciler
from cicd_operator.fake_git import FakeGitStore
from cicd_operator.git_client import SharedGitClientFactory, git_client_factory
from cicd_operator.job_controller import IntegrationJobReconciler
from cicd_operator.observability import configure_logging, log_event
from cicd_operator.pipeline_manager import PipelineManager
from cicd_operator.plugins import WebhookDispatcher
from cicd_operator.resources import IntegrationConfig, IntegrationJob
from cicd_operator.scheduler import FifoScheduler


LOGGER = logging.getLogger("cicd_operator.runtime")


@dataclass(frozen=True)
class OperatorRuntime:
    """Every long-lived collaborator of one operator process, wired together."""

    config: OperatorConfig
    cluster: ClusterClient
    scheduler: FifoScheduler
    job_reconciler: IntegrationJobReconciler
    config_reconciler: IntegrationConfigReconciler
    dispatcher: WebhookDispatcher
    git_clients: SharedGitClientFactory

    def start(self) -> None:
        self.scheduler.start()
        log_event(LOGGER, "operator_started", max_pipeline_runs=self.config.max_pipeline_runs)

    def stop(self) -> None:
        self.scheduler.stop()
        self.git_clients.close()
        log_event(LOGGER, "operator_stopped")

    def reconcile_all(self) -> dict[str, ReconcileResult]:
        """Run one reconcile pass over every config and job currently in the store."""
        results: dict[str, ReconcileResult] = {}
        for config in self.cluster.list(IntegrationConfig):
            key = ResourceKey.of(config)
            results[f"{IntegrationConfig.KIND}/{key}"] = self.config_reconciler.reconcile(key)
        for job in self.cluster.list(IntegrationJob):
            key = ResourceKey.of(job)
            results[f"{IntegrationJob.KIND}/{key}"] = self.job_reconciler.reconcile(key)
        return results


def build_runtime(
    config: OperatorConfig,
    cluster: ClusterClient,
    *,
    fake_store: FakeGitStore | None = None,
    http_client: httpx.Client | None = None,
    verbose: bool | str | None = None,
) -> OperatorRuntime:
    configure_logging(verbose, state_dir=config.state_dir)
    factory = git_client_factory(config, fake_store=fake_store, http_client=http_client)
    pipeline_manager = PipelineManager(factory, status_context=config.status_context)
    scheduler = FifoScheduler(
        cluster, pipeline_manager, max_pipeline_runs=config.max_pipeline_runs
    )

    approve = ApproveHandler(factory)
    chatops = ChatOps()
    for command_type in COMMAND_TYPES:
        chatops.register(command_type, approve.handle_chatops)

    return OperatorRuntime(
        config=config,
        cluster=cluster,
        scheduler=scheduler,
        job_reconciler=IntegrationJobReconciler(
            cluster, scheduler=scheduler, pipeline_manager=pipeline_manager
        ),
        config_reconciler=IntegrationConfigReconciler(
            cluster, operator_config=config, git_client_factory=factory
        ),
        dispatcher=WebhookDispatcher([approve], chatops, factory),
        git_clients=factory,
    )
