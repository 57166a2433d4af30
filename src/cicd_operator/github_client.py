from __future__ import annotations

from collections.abc import Mapping
import logging
from urllib.parse import quote

import httpx

from cicd_operator.errors import LabelNotFoundError, NotFoundError
from cicd_operator.http_transport import get_paginated, request_http
from cicd_operator.models import (
    Branch,
    Change,
    Comment,
    Commit,
    CommitStatus,
    CommitStatusState,
    Diff,
    Issue,
    IssueComment,
    IssueLabel,
    IssueType,
    MergeMethod,
    PullRequest,
    ReviewState,
    User,
    Webhook,
    WebhookEntry,
    sort_newest_first,
)
from cicd_operator.observability import log_event
from cicd_operator.payloads import (
    PayloadError,
    as_int,
    as_object_dict,
    as_optional_int,
    as_string,
    nested,
    parse_timestamp,
    require_list,
    require_object_dict,
)
from cicd_operator.webhooks import github_pull_request, parse_github_webhook


LOGGER = logging.getLogger("cicd_operator.github_client")
_WRITE_PERMISSIONS = {"admin", "maintain", "write"}
_REVIEW_STATES: dict[str, ReviewState] = {
    "APPROVED": "approved",
    "CHANGES_REQUESTED": "unapproved",
}
_COMMIT_STATUS_STATES: set[str] = {"pending", "success", "failure", "error"}
_MAX_STATUS_DESCRIPTION = 140


class GitHubClient:
    """GitHub REST v3 client bound to a single ``owner/name`` repository."""

    def __init__(
        self,
        *,
        repository: str,
        api_url: str,
        token: str | None,
        http_client: httpx.Client,
        webhook_secret: str | None = None,
    ) -> None:
        self.repository = repository
        self._api_url = api_url.rstrip("/")
        self._token = token
        self._http = http_client
        self._webhook_secret = webhook_secret

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> Webhook | None:
        return parse_github_webhook(headers, body, secret=self._webhook_secret)

    def list_webhooks(self) -> list[WebhookEntry]:
        entries: list[WebhookEntry] = []
        for item in self._list_all(self._repo_url("hooks"), what="hooks"):
            entries.append(
                WebhookEntry(
                    id=as_int(item.get("id"), field="hook.id"),
                    url=as_string(nested(item, "config", "url")),
                )
            )
        return entries

    def register_webhook(self, url: str) -> None:
        config: dict[str, object] = {"url": url, "content_type": "json", "insecure_ssl": "0"}
        if self._webhook_secret:
            config["secret"] = self._webhook_secret
        self._request(
            "POST",
            self._repo_url("hooks"),
            payload={"name": "web", "active": True, "events": ["*"], "config": config},
        )
        log_event(LOGGER, "github_webhook_registered", repo=self.repository, url=url)

    def delete_webhook(self, webhook_id: int) -> None:
        self._request("DELETE", self._repo_url(f"hooks/{webhook_id}"))

    def list_commit_statuses(self, ref: str) -> list[CommitStatus]:
        statuses: list[CommitStatus] = []
        for item in self._list_all(
            self._repo_url(f"commits/{quote(ref, safe='')}/statuses"), what="statuses"
        ):
            state = as_string(item.get("state"))
            if state not in _COMMIT_STATUS_STATES:
                continue
            statuses.append(
                CommitStatus(
                    context=as_string(item.get("context")),
                    state=_commit_status_state(state),
                    description=as_string(item.get("description")),
                    target_url=as_string(item.get("target_url")),
                )
            )
        return statuses

    def set_commit_status(self, sha: str, status: CommitStatus) -> None:
        payload: dict[str, object] = {
            "state": status.state,
            "context": status.context,
            "description": status.description[:_MAX_STATUS_DESCRIPTION],
        }
        if status.target_url:
            payload["target_url"] = status.target_url
        self._request("POST", self._repo_url(f"statuses/{sha}"), payload=payload)

    def get_user_info(self, name: str) -> User:
        payload = self._request_json("GET", f"{self._api_url}/users/{quote(name, safe='')}")
        obj = require_object_dict(payload, what="user")
        return User(
            id=as_int(obj.get("id"), field="user.id"),
            name=as_string(obj.get("login")),
            email=as_string(obj.get("email")),
        )

    def can_user_write_to_repo(self, user: User) -> bool:
        payload = self._request_json(
            "GET",
            self._repo_url(f"collaborators/{quote(user.name, safe='')}/permission"),
        )
        obj = require_object_dict(payload, what="permission")
        permission = as_string(obj.get("permission"))
        role = as_string(obj.get("role_name"))
        return permission in _WRITE_PERMISSIONS or role in _WRITE_PERMISSIONS

    def register_comment(self, issue_type: IssueType, issue_id: int, body: str) -> None:
        # Pull requests share the issue comment endpoint.
        self._request("POST", self._repo_url(f"issues/{issue_id}/comments"), payload={"body": body})

    def list_comments(self, issue_id: int) -> list[IssueComment]:
        comments: list[IssueComment] = []
        for item in self._list_all(self._repo_url(f"issues/{issue_id}/comments"), what="comments"):
            comments.append(
                IssueComment(
                    comment=Comment(
                        body=as_string(item.get("body")),
                        created_at=parse_timestamp(item.get("created_at")),
                    ),
                    issue=Issue(),
                    author=_user(item.get("user")),
                    comment_id=as_int(item.get("id"), field="comment.id"),
                )
            )
        for item in self._list_all(self._repo_url(f"pulls/{issue_id}/reviews"), what="reviews"):
            state = _REVIEW_STATES.get(as_string(item.get("state")))
            body = as_string(item.get("body"))
            if state is None and not body:
                continue
            comments.append(
                IssueComment(
                    comment=Comment(body=body, created_at=parse_timestamp(item.get("submitted_at"))),
                    issue=Issue(),
                    author=_user(item.get("user")),
                    review_state=state,
                    comment_id=as_int(item.get("id"), field="review.id"),
                )
            )
        return sort_newest_first(comments)

    def list_pull_requests(self, only_open: bool) -> list[PullRequest]:
        state = "open" if only_open else "all"
        return [
            github_pull_request(item)
            for item in self._list_all(self._repo_url(f"pulls?state={state}"), what="pulls")
        ]

    def get_pull_request(self, pr_id: int) -> PullRequest:
        payload = self._request_json("GET", self._repo_url(f"pulls/{pr_id}"))
        return github_pull_request(require_object_dict(payload, what="pull request"))

    def merge_pull_request(self, pr_id: int, sha: str, method: MergeMethod, message: str) -> None:
        if not message:
            pr = self.get_pull_request(pr_id)
            message = f"{pr.title}(#{pr.id})"
        self._request(
            "PUT",
            self._repo_url(f"pulls/{pr_id}/merge"),
            payload={"commit_title": message, "sha": sha, "merge_method": method},
        )
        log_event(LOGGER, "github_pull_request_merged", repo=self.repository, pr_number=pr_id)

    def get_pull_request_diff(self, pr_id: int) -> Diff:
        changes: list[Change] = []
        for item in self._list_all(self._repo_url(f"pulls/{pr_id}/files"), what="files"):
            filename = as_string(item.get("filename"))
            changes.append(
                Change(
                    old_file=as_string(item.get("previous_filename")) or filename,
                    new_file=filename,
                    additions=as_optional_int(item.get("additions"), field="additions") or 0,
                    deletions=as_optional_int(item.get("deletions"), field="deletions") or 0,
                    changes=as_optional_int(item.get("changes"), field="changes") or 0,
                )
            )
        return Diff(changes=tuple(changes))

    def list_pull_request_commits(self, pr_id: int) -> list[Commit]:
        commits: list[Commit] = []
        for item in self._list_all(self._repo_url(f"pulls/{pr_id}/commits"), what="commits"):
            author = _user(item.get("author"))
            email = as_string(nested(item, "commit", "author", "email"))
            commits.append(
                Commit(
                    sha=as_string(item.get("sha")),
                    message=as_string(nested(item, "commit", "message")),
                    author=User(id=author.id, name=author.name, email=email),
                )
            )
        return commits

    def list_labels(self, pr_id: int) -> list[IssueLabel]:
        return [
            IssueLabel(name=as_string(item.get("name")))
            for item in self._list_all(self._repo_url(f"issues/{pr_id}/labels"), what="labels")
        ]

    def set_label(self, issue_type: IssueType, issue_id: int, label: str) -> None:
        self._request(
            "POST", self._repo_url(f"issues/{issue_id}/labels"), payload={"labels": [label]}
        )

    def delete_label(self, issue_type: IssueType, issue_id: int, label: str) -> None:
        try:
            self._request(
                "DELETE", self._repo_url(f"issues/{issue_id}/labels/{quote(label, safe='')}")
            )
        except NotFoundError as exc:
            if "Label does not exist" in str(exc):
                raise LabelNotFoundError(label) from exc
            raise

    def get_branch(self, name: str) -> Branch:
        payload = self._request_json("GET", self._repo_url(f"branches/{quote(name, safe='')}"))
        obj = require_object_dict(payload, what="branch")
        return Branch(
            name=as_string(obj.get("name")),
            commit_sha=as_string(nested(obj, "commit", "sha")),
        )

    def _repo_url(self, path: str) -> str:
        return f"{self._api_url}/repos/{self.repository}/{path}"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _request(self, method: str, url: str, *, payload: object | None = None) -> httpx.Response:
        return request_http(self._http, method, url, headers=self._headers(), payload=payload)

    def _request_json(self, method: str, url: str) -> object:
        return self._request(method, url).json()

    def _list_all(self, url: str, *, what: str) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []

        def _accumulate(page: object) -> None:
            for entry in require_list(page, what=what):
                obj = as_object_dict(entry)
                if obj is None:
                    raise PayloadError(f"Unexpected payload: expected object in {what}")
                items.append(obj)

        get_paginated(self._http, url, accumulate=_accumulate, headers=self._headers())
        return items


def _user(value: object) -> User:
    obj = as_object_dict(value)
    if obj is None:
        return User(id=0, name="")
    return User(
        id=as_optional_int(obj.get("id"), field="user.id") or 0,
        name=as_string(obj.get("login")),
    )


def _commit_status_state(value: str) -> CommitStatusState:
    if value == "success":
        return "success"
    if value == "failure":
        return "failure"
    if value == "error":
        return "error"
    return "pending"
