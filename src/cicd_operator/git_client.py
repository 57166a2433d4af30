"""Provider-agnostic git client interface and the factory that selects an implementation."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
import threading
from typing import Literal, Protocol

import httpx

from cicd_operator.config import OperatorConfig
from cicd_operator.errors import NotInitializedError, UnsupportedGitTypeError
from cicd_operator.fake_git import FakeGitClient, FakeGitStore
from cicd_operator.github_client import GitHubClient
from cicd_operator.gitlab_client import GitLabClient
from cicd_operator.models import (
    Branch,
    Commit,
    CommitStatus,
    Diff,
    IssueComment,
    IssueLabel,
    IssueType,
    MergeMethod,
    PullRequest,
    User,
    Webhook,
    WebhookEntry,
)
from cicd_operator.observability import log_event
from cicd_operator.resources import IntegrationConfig


LOGGER = logging.getLogger("cicd_operator.git_client")

GitType = Literal["github", "gitlab", "fake"]
GIT_TYPES: tuple[GitType, ...] = ("github", "gitlab", "fake")


class GitClient(Protocol):
    def list_webhooks(self) -> list[WebhookEntry]: ...

    def register_webhook(self, url: str) -> None: ...

    def delete_webhook(self, webhook_id: int) -> None: ...

    def list_commit_statuses(self, ref: str) -> list[CommitStatus]: ...

    def set_commit_status(self, sha: str, status: CommitStatus) -> None: ...

    def get_user_info(self, name: str) -> User: ...

    def can_user_write_to_repo(self, user: User) -> bool: ...

    def register_comment(self, issue_type: IssueType, issue_id: int, body: str) -> None: ...

    def list_comments(self, issue_id: int) -> list[IssueComment]:
        """Return comments and reviews newest first, ties broken by descending id."""
        ...

    def list_pull_requests(self, only_open: bool) -> list[PullRequest]: ...

    def get_pull_request(self, pr_id: int) -> PullRequest: ...

    def merge_pull_request(
        self, pr_id: int, sha: str, method: MergeMethod, message: str
    ) -> None: ...

    def get_pull_request_diff(self, pr_id: int) -> Diff: ...

    def list_pull_request_commits(self, pr_id: int) -> list[Commit]: ...

    def list_labels(self, pr_id: int) -> list[IssueLabel]: ...

    def set_label(self, issue_type: IssueType, issue_id: int, label: str) -> None: ...

    def delete_label(self, issue_type: IssueType, issue_id: int, label: str) -> None: ...

    def get_branch(self, name: str) -> Branch: ...

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> Webhook | None: ...


GitClientFactory = Callable[[IntegrationConfig], GitClient]


def new_git_client(
    config: IntegrationConfig,
    *,
    fake_store: FakeGitStore | None = None,
    http_client: httpx.Client | None = None,
    timeout: float = 30.0,
) -> GitClient:
    git = config.spec.git
    log_event(
        LOGGER,
        "git_client_created",
        git_type=git.type,
        repo=git.repository,
        api_url=git.effective_api_url(),
    )

    if git.type == "github":
        return GitHubClient(
            repository=git.repository,
            api_url=git.effective_api_url(),
            token=git.token,
            webhook_secret=config.spec.webhook_secret,
            http_client=http_client or _new_http_client(verify=git.tls_verify, timeout=timeout),
        )
    if git.type == "gitlab":
        return GitLabClient(
            repository=git.repository,
            api_url=git.effective_api_url(),
            token=git.token,
            webhook_secret=config.spec.webhook_secret,
            http_client=http_client or _new_http_client(verify=git.tls_verify, timeout=timeout),
        )
    if git.type == "fake":
        if fake_store is None:
            raise NotInitializedError("fake git store not initialized")
        return FakeGitClient(fake_store, git.repository)
    raise UnsupportedGitTypeError(git.type)


def git_client_factory(
    operator_config: OperatorConfig,
    *,
    fake_store: FakeGitStore | None = None,
    http_client: httpx.Client | None = None,
) -> SharedGitClientFactory:
    return SharedGitClientFactory(operator_config, fake_store=fake_store, http_client=http_client)


class SharedGitClientFactory:
    """Builds a git client per config call while reusing HTTP connection pools.

    A caller-supplied ``http_client`` is used for every provider client and is
    left open by :meth:`close`. Otherwise one pool is created lazily per TLS
    verification setting and closed by :meth:`close`.
    """

    def __init__(
        self,
        operator_config: OperatorConfig,
        *,
        fake_store: FakeGitStore | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._timeout = float(operator_config.request_timeout_seconds)
        self._fake_store = fake_store
        self._http_client = http_client
        self._owned_clients: dict[bool, httpx.Client] = {}
        self._lock = threading.Lock()

    def __call__(self, config: IntegrationConfig) -> GitClient:
        git = config.spec.git
        http_client = self._http_client
        if http_client is None and git.type in ("github", "gitlab"):
            http_client = self._pooled_client(verify=git.tls_verify)
        return new_git_client(
            config,
            fake_store=self._fake_store,
            http_client=http_client,
            timeout=self._timeout,
        )

    def close(self) -> None:
        with self._lock:
            clients = list(self._owned_clients.values())
            self._owned_clients.clear()
        for client in clients:
            client.close()

    def _pooled_client(self, *, verify: bool) -> httpx.Client:
        with self._lock:
            client = self._owned_clients.get(verify)
            if client is None:
                client = _new_http_client(verify=verify, timeout=self._timeout)
                self._owned_clients[verify] = client
            return client


def _new_http_client(*, verify: bool, timeout: float) -> httpx.Client:
    return httpx.Client(timeout=timeout, verify=verify, follow_redirects=True)
