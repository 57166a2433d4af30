from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging

from cicd_operator.models import Webhook
from cicd_operator.observability import log_event
from cicd_operator.resources import IntegrationConfig


LOGGER = logging.getLogger("cicd_operator.chatops")


@dataclass(frozen=True)
class Command:
    type: str
    args: tuple[str, ...] = ()


CommandHandler = Callable[[Command, Webhook, IntegrationConfig], None]


def extract_commands(body: str) -> list[Command]:
    """Return every ``/command arg ...`` line in ``body``, in order of appearance."""
    commands: list[Command] = []
    for line in body.splitlines():
        stripped = line.strip()
        if not stripped.startswith("/"):
            continue
        fields = stripped.split()
        name = fields[0][1:]
        if not name:
            continue
        commands.append(Command(type=name, args=tuple(fields[1:])))
    return commands


class ChatOps:
    """Routes slash commands found in new comments to the handler registered for each type."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}

    def register(self, command_type: str, handler: CommandHandler) -> None:
        if command_type in self._handlers:
            raise ValueError(f"chatops handler already registered for {command_type!r}")
        self._handlers[command_type] = handler

    @property
    def command_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    def handle(self, webhook: Webhook, config: IntegrationConfig) -> list[Exception]:
        if webhook.event_type != "issue_comment" or webhook.issue_comment is None:
            return []

        errors: list[Exception] = []
        for command in extract_commands(webhook.issue_comment.comment.body):
            handler = self._handlers.get(command.type)
            if handler is None:
                continue
            log_event(
                LOGGER,
                "chatops_command",
                command=command.type,
                args=" ".join(command.args),
                sender=webhook.sender.name,
                repo=webhook.repo.name,
            )
            try:
                handler(command, webhook, config)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "chatops_command_failed",
                    command=command.type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                errors.append(exc)
        return errors
