"""Approval plugin.

Keeps the ``approved`` label on a pull request in agreement with the approval
intent expressed by authorized reviewers. Three inputs drive it:

* provider review events (GitHub review approve/request changes, GitLab
  approve/unapprove),
* ``approved`` label changes made by anyone, including this plugin,
* ``/approve``, ``/approve cancel`` and ``/approve check`` comment commands
  (``/ci-approve`` on GitLab).

Every mutation is authorized first. An unauthorized label change is reverted
before the rejection comment is posted.
"""

from __future__ import annotations

from collections.abc import Iterable
import logging

from cicd_operator.chatops import Command, extract_commands
from cicd_operator.errors import LabelNotFoundError, UnauthorizedError
from cicd_operator.git_client import GitClient, GitClientFactory
from cicd_operator.models import IssueComment, PullRequest, User, Webhook, has_label
from cicd_operator.observability import log_event
from cicd_operator.resources import IntegrationConfig


LOGGER = logging.getLogger("cicd_operator.approve")

APPROVED_LABEL = "approved"
COMMAND_TYPE_APPROVE = "approve"
COMMAND_TYPE_GITLAB_APPROVE = "ci-approve"
COMMAND_TYPES = (COMMAND_TYPE_APPROVE, COMMAND_TYPE_GITLAB_APPROVE)


def generate_user_unauthorized_comment(user: str) -> str:
    return (
        "[APPROVE ALERT]\n\n"
        f"User `{user}` is not allowed to approve/cancel approve this pull request.\n\n"
        "Users who meet the following conditions can approve the pull request.\n"
        "- Not an author of the pull request\n"
        "- (For GitHub) Have write permission on the repository\n"
        "- (For GitLab) Be Developer, Maintainer, or Owner\n"
    )


def generate_approved_comment(user: str) -> str:
    return f"[APPROVE ALERT]\n\nUser {user} approved this pull request!"


def generate_approve_canceled_comment(user: str) -> str:
    return f"[APPROVE ALERT]\n\nUser {user} canceled the approval."


def generate_help_comment() -> str:
    return (
        "[APPROVE ALERT]\n\n"
        "Approve comment is malformed\n\n"
        "You can approve or cancel the approve the pull request by commenting...\n"
        "- (For GitHub) `/approve`\n"
        "- (For GitHub) `/approve cancel`\n"
        "- (For GitLab) `/ci-approve`\n"
        "- (For GitLab) `/ci-approve cancel`\n"
    )


def check_approval(comments_newest_first: Iterable[IssueComment]) -> bool:
    """Return the verdict of the newest decisive comment; no decisive comment means not approved."""
    for item in comments_newest_first:
        if item.review_state == "approved":
            return True
        if item.review_state == "unapproved":
            return False
        for command in extract_commands(item.comment.body):
            if command.type not in COMMAND_TYPES:
                continue
            if not command.args:
                return True
            if command.args == ("cancel",):
                return False
    return False


def is_same_user(left: User, right: User) -> bool:
    if left.id and right.id:
        return left.id == right.id
    return bool(left.name) and left.name == right.name


class ApproveHandler:
    name = "approve"

    def __init__(self, git_client_factory: GitClientFactory) -> None:
        self._git_client_factory = git_client_factory

    def handle(self, webhook: Webhook, config: IntegrationConfig) -> None:
        """Webhook entry point for review events and ``approved`` label changes."""
        if config.spec.git.token is None:
            return

        pr = webhook.pull_request
        if webhook.event_type == "pull_request" and pr is not None:
            if pr.action in {"labeled", "unlabeled"}:
                self._handle_label_event(webhook, pr, config, self._git_client_factory(config))
            return

        issue_comment = webhook.issue_comment
        if webhook.event_type != "pull_request_review" or issue_comment is None:
            return
        reviewed = issue_comment.issue.pull_request
        if reviewed is None or reviewed.state != "open" or issue_comment.review_state is None:
            return

        git_client = self._git_client_factory(config)
        if not self._authorize_or_reject(config, webhook.sender, reviewed, git_client):
            return
        if issue_comment.review_state == "approved":
            self.approve(issue_comment.author, reviewed, git_client)
        else:
            self.cancel(issue_comment.author, reviewed, git_client)

    def handle_chatops(
        self, command: Command, webhook: Webhook, config: IntegrationConfig
    ) -> None:
        issue_comment = webhook.issue_comment
        if issue_comment is None:
            return
        pr = issue_comment.issue.pull_request
        if pr is None or pr.state != "open":
            return
        if config.spec.git.token is None:
            return

        git_client = self._git_client_factory(config)
        if not self._authorize_or_reject(config, webhook.sender, pr, git_client):
            return

        if not command.args:
            self.approve(issue_comment.author, pr, git_client)
        elif command.args == ("cancel",):
            self.cancel(issue_comment.author, pr, git_client)
        elif command.args == ("check",):
            self.check(issue_comment.author, pr, git_client)
        else:
            git_client.register_comment("pull_request", pr.id, generate_help_comment())

    def authorize(
        self, config: IntegrationConfig, sender: User, author: User, git_client: GitClient
    ) -> None:
        """Raise :class:`UnauthorizedError` unless ``sender`` may approve ``author``'s PR."""
        repository = config.spec.git.repository
        if is_same_user(sender, author):
            raise UnauthorizedError(sender.name, repository)
        if not git_client.can_user_write_to_repo(sender):
            raise UnauthorizedError(sender.name, repository)

    def approve(self, user: User, pr: PullRequest, git_client: GitClient) -> None:
        git_client.set_label("pull_request", pr.id, APPROVED_LABEL)
        log_event(LOGGER, "approval_label_set", user=user.name, pr_number=pr.id, pr_url=pr.url)
        git_client.register_comment("pull_request", pr.id, generate_approved_comment(user.name))

    def cancel(self, user: User, pr: PullRequest, git_client: GitClient) -> None:
        _delete_approved_label(git_client, pr.id)
        log_event(
            LOGGER, "approval_label_deleted", user=user.name, pr_number=pr.id, pr_url=pr.url
        )
        git_client.register_comment(
            "pull_request", pr.id, generate_approve_canceled_comment(user.name)
        )

    def check(self, user: User, pr: PullRequest, git_client: GitClient) -> bool:
        """Converge the label to the newest decisive comment and return the verdict."""
        labeled = has_label(git_client.list_labels(pr.id), APPROVED_LABEL)
        verdict = check_approval(git_client.list_comments(pr.id))
        log_event(
            LOGGER,
            "approval_check",
            user=user.name,
            pr_number=pr.id,
            labeled=labeled,
            verdict=verdict,
        )
        if verdict and not labeled:
            self.approve(user, pr, git_client)
        elif labeled and not verdict:
            self.cancel(user, pr, git_client)
        return verdict

    def _handle_label_event(
        self,
        webhook: Webhook,
        pr: PullRequest,
        config: IntegrationConfig,
        git_client: GitClient,
    ) -> None:
        if not has_label(pr.label_changed, APPROVED_LABEL):
            return

        # The event action is unreliable when several labels change at once;
        # the current label set is the ground truth.
        labeled = has_label(git_client.list_labels(pr.id), APPROVED_LABEL)
        log_event(
            LOGGER,
            "approval_label_changed",
            sender=webhook.sender.name,
            repo=webhook.repo.url,
            pr_number=pr.id,
            labeled=labeled,
        )
        try:
            self.authorize(config, webhook.sender, pr.author, git_client)
        except UnauthorizedError as exc:
            if labeled:
                _delete_approved_label(git_client, pr.id)
            else:
                git_client.set_label("pull_request", pr.id, APPROVED_LABEL)
            self._reject(exc, pr)
            git_client.register_comment(
                "pull_request", pr.id, generate_user_unauthorized_comment(exc.user)
            )

    def _authorize_or_reject(
        self, config: IntegrationConfig, sender: User, pr: PullRequest, git_client: GitClient
    ) -> bool:
        try:
            self.authorize(config, sender, pr.author, git_client)
        except UnauthorizedError as exc:
            self._reject(exc, pr)
            git_client.register_comment(
                "pull_request", pr.id, generate_user_unauthorized_comment(exc.user)
            )
            return False
        return True

    def _reject(self, exc: UnauthorizedError, pr: PullRequest) -> None:
        log_event(
            LOGGER,
            "approval_unauthorized",
            user=exc.user,
            repo=exc.repo,
            pr_number=pr.id,
        )


def _delete_approved_label(git_client: GitClient, pr_id: int) -> None:
    try:
        git_client.delete_label("pull_request", pr_id, APPROVED_LABEL)
    except LabelNotFoundError:
        pass
