"""Deterministic in-memory git provider used by tests and local runs.

All state lives in a :class:`FakeGitStore` handed to each client, so separate
tests never share data.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import itertools
import time

from cicd_operator.errors import (
    NotFoundError,
    NotInitializedError,
    RateLimitError,
)
from cicd_operator.models import (
    Branch,
    Comment,
    Commit,
    CommitStatus,
    Diff,
    Issue,
    IssueComment,
    IssueLabel,
    IssueType,
    MergeMethod,
    PullRequest,
    User,
    Webhook,
    WebhookEntry,
    sort_newest_first,
)
from cicd_operator.webhooks import parse_github_webhook


@dataclass
class FakeRepo:
    webhooks: dict[int, WebhookEntry] = field(default_factory=dict)
    user_can_write: dict[str, bool] = field(default_factory=dict)
    pull_requests: dict[int, PullRequest] = field(default_factory=dict)
    pull_request_diffs: dict[int, Diff] = field(default_factory=dict)
    pull_request_commits: dict[int, list[Commit]] = field(default_factory=dict)
    commits: dict[str, list[Commit]] = field(default_factory=dict)
    commit_statuses: dict[str, list[CommitStatus]] = field(default_factory=dict)
    comments: dict[int, list[IssueComment]] = field(default_factory=dict)
    rate_limited_until: int | None = None


@dataclass
class FakeGitStore:
    users: dict[str, User] = field(default_factory=dict)
    repos: dict[str, FakeRepo] = field(default_factory=dict)
    branches: dict[str, Branch] = field(default_factory=dict)
    _ids: itertools.count[int] = field(default_factory=lambda: itertools.count(1), repr=False)

    def add_repo(self, name: str) -> FakeRepo:
        repo = FakeRepo()
        self.repos[name] = repo
        return repo

    def next_id(self) -> int:
        return next(self._ids)


class FakeGitClient:
    def __init__(
        self,
        store: FakeGitStore | None,
        repository: str,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> Webhook | None:
        return parse_github_webhook(headers, body)

    def list_webhooks(self) -> list[WebhookEntry]:
        repo = self._repo()
        self._check_rate_limit(repo)
        return list(repo.webhooks.values())

    def register_webhook(self, url: str) -> None:
        repo = self._repo()
        self._check_rate_limit(repo)
        webhook_id = self._require_store().next_id()
        repo.webhooks[webhook_id] = WebhookEntry(id=webhook_id, url=url)

    def delete_webhook(self, webhook_id: int) -> None:
        self._repo().webhooks.pop(webhook_id, None)

    def list_commit_statuses(self, ref: str) -> list[CommitStatus]:
        statuses = self._repo().commit_statuses.get(ref)
        if statuses is None:
            raise NotFoundError("404 no such ref")
        return list(statuses)

    def set_commit_status(self, sha: str, status: CommitStatus) -> None:
        self._repo().commit_statuses.setdefault(sha, []).append(status)

    def get_user_info(self, name: str) -> User:
        user = self._require_store().users.get(name)
        if user is None:
            raise NotFoundError("404 no such user")
        return user

    def can_user_write_to_repo(self, user: User) -> bool:
        privilege = self._repo().user_can_write.get(user.name)
        if privilege is None:
            raise NotFoundError("404 no such user")
        return privilege

    def register_comment(self, issue_type: IssueType, issue_id: int, body: str) -> None:
        repo = self._repo()
        pull_request = repo.pull_requests.get(issue_id)
        repo.comments.setdefault(issue_id, []).append(
            IssueComment(
                comment=Comment(body=body, created_at=self._clock()),
                issue=Issue(pull_request=pull_request),
                author=User(id=0, name=""),
                comment_id=self._require_store().next_id(),
            )
        )

    def list_comments(self, issue_id: int) -> list[IssueComment]:
        return sort_newest_first(self._repo().comments.get(issue_id, []))

    def list_pull_requests(self, only_open: bool) -> list[PullRequest]:
        prs = [self._repo().pull_requests[pr_id] for pr_id in sorted(self._repo().pull_requests)]
        if only_open:
            return [pr for pr in prs if pr.state == "open"]
        return prs

    def get_pull_request(self, pr_id: int) -> PullRequest:
        return self._pull_request(self._repo(), pr_id)

    def merge_pull_request(self, pr_id: int, sha: str, method: MergeMethod, message: str) -> None:
        repo = self._repo()
        pr = self._pull_request(repo, pr_id)
        repo.pull_requests[pr_id] = replace(pr, state="closed", mergeable=False)
        repo.commits.setdefault(pr.base.ref, []).append(
            Commit(sha=pr.head.sha, message=message or f"{pr.title}(#{pr.id})")
        )

    def get_pull_request_diff(self, pr_id: int) -> Diff:
        diff = self._repo().pull_request_diffs.get(pr_id)
        if diff is None:
            raise NotFoundError("404 no such pr")
        return diff

    def list_pull_request_commits(self, pr_id: int) -> list[Commit]:
        commits = self._repo().pull_request_commits.get(pr_id)
        if commits is None:
            raise NotFoundError("404 no such pr")
        return list(commits)

    def list_labels(self, pr_id: int) -> list[IssueLabel]:
        return list(self._pull_request(self._repo(), pr_id).labels)

    def set_label(self, issue_type: IssueType, issue_id: int, label: str) -> None:
        repo = self._repo()
        pr = self._pull_request(repo, issue_id)
        if pr.has_label(label):
            return
        repo.pull_requests[issue_id] = replace(pr, labels=pr.labels + (IssueLabel(name=label),))

    def delete_label(self, issue_type: IssueType, issue_id: int, label: str) -> None:
        repo = self._repo()
        pr = self._pull_request(repo, issue_id)
        remaining = tuple(existing for existing in pr.labels if existing.name != label)
        if len(remaining) != len(pr.labels):
            repo.pull_requests[issue_id] = replace(pr, labels=remaining)

    def get_branch(self, name: str) -> Branch:
        branch = self._require_store().branches.get(name)
        if branch is None:
            raise NotFoundError(f"404 no such branch ({name})")
        return branch

    def _require_store(self) -> FakeGitStore:
        if self._store is None:
            raise NotInitializedError("repos not initialized")
        return self._store

    def _repo(self) -> FakeRepo:
        repo = self._require_store().repos.get(self._repository)
        if repo is None:
            raise NotFoundError("404 no such repository")
        return repo

    def _pull_request(self, repo: FakeRepo, pr_id: int) -> PullRequest:
        pr = repo.pull_requests.get(pr_id)
        if pr is None:
            raise NotFoundError("404 no such pr")
        return pr

    def _check_rate_limit(self, repo: FakeRepo) -> None:
        if repo.rate_limited_until is not None and repo.rate_limited_until > int(time.time()):
            raise RateLimitError(repo.rate_limited_until, detail="code 403")
