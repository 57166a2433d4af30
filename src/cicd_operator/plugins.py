from __future__ import annotations

from collections.abc import Mapping, Sequence
import logging
from typing import Protocol

from cicd_operator.chatops import ChatOps
from cicd_operator.git_client import GitClientFactory
from cicd_operator.models import Webhook
from cicd_operator.observability import log_event, logging_resource_context
from cicd_operator.resources import IntegrationConfig


LOGGER = logging.getLogger("cicd_operator.plugins")


class WebhookPlugin(Protocol):
    name: str

    def handle(self, webhook: Webhook, config: IntegrationConfig) -> None: ...


class WebhookDispatcher:
    """Fans a normalized webhook out to every plugin, then to chatops for new comments.

    A failing plugin does not stop the others; the first error is re-raised
    once everything has run.
    """

    def __init__(
        self,
        plugins: Sequence[WebhookPlugin],
        chatops: ChatOps,
        git_client_factory: GitClientFactory,
    ) -> None:
        self._plugins = tuple(plugins)
        self._chatops = chatops
        self._git_client_factory = git_client_factory

    def handle_raw(
        self, headers: Mapping[str, str], body: bytes, config: IntegrationConfig
    ) -> Webhook | None:
        webhook = self._git_client_factory(config).parse_webhook(headers, body)
        if webhook is None:
            return None
        self.dispatch(webhook, config)
        return webhook

    def dispatch(self, webhook: Webhook, config: IntegrationConfig) -> None:
        errors: list[Exception] = []
        with logging_resource_context(
            IntegrationConfig.KIND, config.metadata.namespace, config.metadata.name
        ):
            for plugin in self._plugins:
                try:
                    plugin.handle(webhook, config)
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        LOGGER,
                        "webhook_plugin_failed",
                        plugin=plugin.name,
                        event_type=webhook.event_type,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    errors.append(exc)

            if webhook.event_type == "issue_comment":
                errors.extend(self._chatops.handle(webhook, config))

            log_event(
                LOGGER,
                "webhook_dispatched",
                event_type=webhook.event_type,
                plugin_count=len(self._plugins),
                error_count=len(errors),
            )
        if errors:
            raise errors[0]
