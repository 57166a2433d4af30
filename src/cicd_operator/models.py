from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal


EventType = Literal[
    "push",
    "pull_request",
    "pull_request_review",
    "pull_request_review_comment",
    "issue_comment",
]
PullRequestState = Literal["open", "closed"]
PullRequestAction = Literal[
    "open",
    "close",
    "reopen",
    "synchronize",
    "labeled",
    "unlabeled",
    "approved",
    "unapproved",
    "other",
]
ReviewState = Literal["approved", "unapproved"]
IssueType = Literal["issue", "pull_request"]
MergeMethod = Literal["merge", "squash", "rebase"]
CommitStatusState = Literal["pending", "success", "failure", "error"]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class User:
    id: int
    name: str
    email: str = ""


@dataclass(frozen=True)
class Repository:
    name: str
    url: str


@dataclass(frozen=True)
class WebhookEntry:
    id: int
    url: str


@dataclass(frozen=True)
class IssueLabel:
    name: str


@dataclass(frozen=True)
class BranchRef:
    ref: str
    sha: str


@dataclass(frozen=True)
class PullRequest:
    id: int
    title: str
    state: PullRequestState
    author: User
    url: str
    base: BranchRef
    head: BranchRef
    labels: tuple[IssueLabel, ...] = ()
    label_changed: tuple[IssueLabel, ...] = ()
    mergeable: bool = True
    action: PullRequestAction | None = None

    def has_label(self, name: str) -> bool:
        return has_label(self.labels, name)


@dataclass(frozen=True)
class Comment:
    body: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class Issue:
    pull_request: PullRequest | None = None


@dataclass(frozen=True)
class IssueComment:
    comment: Comment
    issue: Issue
    author: User
    review_state: ReviewState | None = None
    comment_id: int = 0


@dataclass(frozen=True)
class CommitStatus:
    context: str
    state: CommitStatusState
    description: str
    target_url: str = ""


@dataclass(frozen=True)
class Commit:
    sha: str
    message: str
    author: User | None = None


@dataclass(frozen=True)
class Change:
    old_file: str
    new_file: str
    additions: int = 0
    deletions: int = 0
    changes: int = 0


@dataclass(frozen=True)
class Diff:
    changes: tuple[Change, ...]


@dataclass(frozen=True)
class Branch:
    name: str
    commit_sha: str


@dataclass(frozen=True)
class Push:
    ref: str
    sha: str


@dataclass(frozen=True)
class Webhook:
    event_type: EventType
    repo: Repository
    sender: User
    push: Push | None = None
    pull_request: PullRequest | None = None
    issue_comment: IssueComment | None = None


def has_label(labels: Iterable[IssueLabel], name: str) -> bool:
    return any(label.name == name for label in labels)


def sort_newest_first(comments: Iterable[IssueComment]) -> list[IssueComment]:
    """Order comments by creation time, newest first; equal times fall back to id."""

    def _key(item: IssueComment) -> tuple[datetime, int]:
        created = item.comment.created_at
        if created is None:
            created = _EPOCH
        elif created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created, item.comment_id

    return sorted(comments, key=_key, reverse=True)
