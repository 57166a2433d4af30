"""IntegrationConfig reconciler.

Registers this operator's webhook on the configured repository, removes it
again when the config is deleted, and publishes the outcome as the
``webhook-registered`` and ``ready`` conditions.
"""

from __future__ import annotations

import logging

from cicd_operator.cluster import (
    ClusterClient,
    ReconcileResult,
    ResourceKey,
    ResourceNotFoundError,
)
from cicd_operator.config import OperatorConfig
from cicd_operator.errors import GitError
from cicd_operator.git_client import GitClientFactory
from cicd_operator.http_transport import check_rate_limit_get_reset_time, get_gap_time
from cicd_operator.observability import log_event, log_warning, logging_resource_context
from cicd_operator.resources import (
    CONDITION_READY,
    CONDITION_WEBHOOK_REGISTERED,
    FINALIZER,
    Condition,
    IntegrationConfig,
    find_condition,
    set_condition,
)


LOGGER = logging.getLogger("cicd_operator.config_controller")

REASON_REGISTERED = "Registered"
REASON_NO_GIT_TOKEN = "noGitToken"
REASON_GIT_CLI_ERR = "gitCliErr"
REASON_REGISTER_FAILED = "webhookRegisterFailed"
MESSAGE_REGISTERED = "Webhook is registered"
MESSAGE_NO_GIT_TOKEN = "Skipped to register webhook"
MESSAGE_ALREADY_REGISTERED = "same webhook has already registered"


class IntegrationConfigReconciler:
    def __init__(
        self,
        cluster: ClusterClient,
        *,
        operator_config: OperatorConfig,
        git_client_factory: GitClientFactory,
    ) -> None:
        self._cluster = cluster
        self._operator_config = operator_config
        self._git_client_factory = git_client_factory

    def reconcile(self, key: ResourceKey) -> ReconcileResult:
        with logging_resource_context(IntegrationConfig.KIND, key.namespace, key.name):
            return self._reconcile(key)

    def _reconcile(self, key: ResourceKey) -> ReconcileResult:
        try:
            config = self._cluster.get(IntegrationConfig, key)
        except ResourceNotFoundError:
            return ReconcileResult()

        if self._handle_finalizer(config):
            return ReconcileResult()

        result = self._register_webhook(config)
        self._update_ready(config)
        self._cluster.patch_status(config)
        return result

    def _handle_finalizer(self, config: IntegrationConfig) -> bool:
        finalizers = config.metadata.finalizers
        if FINALIZER not in finalizers:
            if config.metadata.deletion_timestamp is not None:
                return True
            finalizers.append(FINALIZER)
            self._cluster.patch(config)
            if find_condition(config.status.conditions, CONDITION_READY) is None:
                self._update_ready(config)
                self._cluster.patch_status(config)
            log_event(LOGGER, "config_finalizer_added")
            return True

        if config.metadata.deletion_timestamp is not None:
            self._delete_webhooks(config)
            config.metadata.finalizers = [item for item in finalizers if item != FINALIZER]
            self._cluster.patch(config)
            log_event(LOGGER, "config_finalizer_removed")
            return True

        return False

    def _delete_webhooks(self, config: IntegrationConfig) -> None:
        """Best effort: a failure here must not keep the config from being deleted."""
        if config.spec.git.token is None:
            return
        url = self._webhook_url(config)
        try:
            git_client = self._git_client_factory(config)
            entries = git_client.list_webhooks()
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "config_webhook_delete_failed",
                url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        for entry in entries:
            if entry.url != url:
                continue
            try:
                git_client.delete_webhook(entry.id)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "config_webhook_delete_failed",
                    url=url,
                    webhook_id=entry.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            log_event(LOGGER, "config_webhook_deleted", url=url, webhook_id=entry.id)

    def _register_webhook(self, config: IntegrationConfig) -> ReconcileResult:
        conditions = config.status.conditions
        current = find_condition(conditions, CONDITION_WEBHOOK_REGISTERED)
        if current is not None and current.status == "True":
            return ReconcileResult()

        if config.spec.git.token is None:
            set_condition(
                conditions,
                Condition(
                    type=CONDITION_WEBHOOK_REGISTERED,
                    status="False",
                    reason=REASON_NO_GIT_TOKEN,
                    message=MESSAGE_NO_GIT_TOKEN,
                ),
            )
            return ReconcileResult()

        url = self._webhook_url(config)
        try:
            git_client = self._git_client_factory(config)
        except GitError as exc:
            self._set_webhook_failed(conditions, REASON_GIT_CLI_ERR, str(exc))
            return ReconcileResult()

        try:
            entries = git_client.list_webhooks()
            if any(entry.url == url for entry in entries):
                self._set_webhook_failed(
                    conditions, REASON_REGISTER_FAILED, MESSAGE_ALREADY_REGISTERED
                )
                return ReconcileResult()
            git_client.register_webhook(url)
        except Exception as exc:  # noqa: BLE001
            self._set_webhook_failed(conditions, REASON_REGISTER_FAILED, str(exc))
            reset_time = check_rate_limit_get_reset_time(exc)
            if reset_time:
                return ReconcileResult(requeue_after=float(max(get_gap_time(reset_time), 1)))
            return ReconcileResult()

        set_condition(
            conditions,
            Condition(
                type=CONDITION_WEBHOOK_REGISTERED,
                status="True",
                reason=REASON_REGISTERED,
                message=MESSAGE_REGISTERED,
            ),
        )
        log_event(LOGGER, "config_webhook_registered", url=url)
        return ReconcileResult()

    def _set_webhook_failed(self, conditions: list[Condition], reason: str, message: str) -> None:
        set_condition(
            conditions,
            Condition(
                type=CONDITION_WEBHOOK_REGISTERED,
                status="False",
                reason=reason,
                message=message,
            ),
        )
        log_warning(LOGGER, "config_webhook_register_failed", reason=reason, message=message)

    def _update_ready(self, config: IntegrationConfig) -> None:
        webhook = find_condition(config.status.conditions, CONDITION_WEBHOOK_REGISTERED)
        ready = webhook is not None and (
            webhook.status == "True" or webhook.reason == REASON_NO_GIT_TOKEN
        )
        set_condition(
            config.status.conditions,
            Condition(
                type=CONDITION_READY,
                status="True" if ready else "False",
                reason="Ready" if ready else "NotReady",
                message="Ready" if ready else "Not ready",
            ),
        )

    def _webhook_url(self, config: IntegrationConfig) -> str:
        return self._operator_config.webhook_url(config.metadata.namespace, config.metadata.name)
