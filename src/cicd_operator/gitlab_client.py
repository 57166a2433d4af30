from __future__ import annotations

from collections.abc import Mapping
import logging
from urllib.parse import quote, urlencode

import httpx

from cicd_operator.errors import NotFoundError
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
    as_bool,
    as_int,
    as_object_dict,
    as_optional_int,
    as_string,
    nested,
    parse_timestamp,
    require_list,
    require_object_dict,
)
from cicd_operator.webhooks import gitlab_labels, gitlab_merge_request, parse_gitlab_webhook


LOGGER = logging.getLogger("cicd_operator.gitlab_client")
# Developer (30) and above may push to the repository.
_DEVELOPER_ACCESS_LEVEL = 30
_SYSTEM_NOTE_REVIEW_STATES: dict[str, ReviewState] = {
    "approved this merge request": "approved",
    "unapproved this merge request": "unapproved",
}
_STATE_TO_GITLAB: dict[CommitStatusState, str] = {
    "pending": "pending",
    "success": "success",
    "failure": "failed",
    "error": "canceled",
}
_STATE_FROM_GITLAB: dict[str, CommitStatusState] = {
    "pending": "pending",
    "created": "pending",
    "running": "pending",
    "success": "success",
    "failed": "failure",
    "canceled": "error",
}


class GitLabClient:
    """GitLab REST v4 client bound to one project, addressed by its ``group/name`` path."""

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
        return parse_gitlab_webhook(headers, body, secret=self._webhook_secret)

    def list_webhooks(self) -> list[WebhookEntry]:
        return [
            WebhookEntry(
                id=as_int(item.get("id"), field="hook.id"),
                url=as_string(item.get("url")),
            )
            for item in self._list_all(self._project_url("hooks"), what="hooks")
        ]

    def register_webhook(self, url: str) -> None:
        payload: dict[str, object] = {
            "url": url,
            "push_events": True,
            "merge_requests_events": True,
            "note_events": True,
            "tag_push_events": True,
            "enable_ssl_verification": False,
        }
        if self._webhook_secret:
            payload["token"] = self._webhook_secret
        self._request("POST", self._project_url("hooks"), payload=payload)
        log_event(LOGGER, "gitlab_webhook_registered", repo=self.repository, url=url)

    def delete_webhook(self, webhook_id: int) -> None:
        self._request("DELETE", self._project_url(f"hooks/{webhook_id}"))

    def list_commit_statuses(self, ref: str) -> list[CommitStatus]:
        statuses: list[CommitStatus] = []
        for item in self._list_all(
            self._project_url(f"repository/commits/{quote(ref, safe='')}/statuses"),
            what="statuses",
        ):
            statuses.append(
                CommitStatus(
                    context=as_string(item.get("name")),
                    state=_STATE_FROM_GITLAB.get(as_string(item.get("status")), "pending"),
                    description=as_string(item.get("description")),
                    target_url=as_string(item.get("target_url")),
                )
            )
        return statuses

    def set_commit_status(self, sha: str, status: CommitStatus) -> None:
        payload: dict[str, object] = {
            "state": _STATE_TO_GITLAB[status.state],
            "name": status.context,
            "description": status.description,
        }
        if status.target_url:
            payload["target_url"] = status.target_url
        self._request("POST", self._project_url(f"statuses/{sha}"), payload=payload)

    def get_user_info(self, name: str) -> User:
        query = urlencode({"username": name})
        payload = self._request("GET", f"{self._api_url}/api/v4/users?{query}").json()
        users = require_list(payload, what="users")
        if not users:
            raise NotFoundError(f"404 no such user ({name})")
        obj = require_object_dict(users[0], what="user")
        return User(
            id=as_int(obj.get("id"), field="user.id"),
            name=as_string(obj.get("username")),
            email=as_string(obj.get("public_email")),
        )

    def can_user_write_to_repo(self, user: User) -> bool:
        try:
            payload = self._request("GET", self._project_url(f"members/all/{user.id}")).json()
        except NotFoundError:
            return False
        obj = require_object_dict(payload, what="member")
        access_level = as_optional_int(obj.get("access_level"), field="access_level") or 0
        return access_level >= _DEVELOPER_ACCESS_LEVEL

    def register_comment(self, issue_type: IssueType, issue_id: int, body: str) -> None:
        self._request(
            "POST",
            self._project_url(f"{_noteable_path(issue_type)}/{issue_id}/notes"),
            payload={"body": body},
        )

    def list_comments(self, issue_id: int) -> list[IssueComment]:
        comments: list[IssueComment] = []
        for item in self._list_all(
            self._project_url(f"merge_requests/{issue_id}/notes"), what="notes"
        ):
            body = as_string(item.get("body"))
            review_state: ReviewState | None = None
            if as_bool(item.get("system")):
                review_state = _SYSTEM_NOTE_REVIEW_STATES.get(body.strip())
                if review_state is None:
                    continue
            comments.append(
                IssueComment(
                    comment=Comment(body=body, created_at=parse_timestamp(item.get("created_at"))),
                    issue=Issue(),
                    author=_user(item.get("author")),
                    review_state=review_state,
                    comment_id=as_int(item.get("id"), field="note.id"),
                )
            )
        return sort_newest_first(comments)

    def list_pull_requests(self, only_open: bool) -> list[PullRequest]:
        state = "opened" if only_open else "all"
        return [
            gitlab_merge_request(item, labels=gitlab_labels(item.get("labels")))
            for item in self._list_all(
                self._project_url(f"merge_requests?state={state}"), what="merge requests"
            )
        ]

    def get_pull_request(self, pr_id: int) -> PullRequest:
        payload = self._request("GET", self._project_url(f"merge_requests/{pr_id}")).json()
        obj = require_object_dict(payload, what="merge request")
        return gitlab_merge_request(obj, labels=gitlab_labels(obj.get("labels")))

    def merge_pull_request(self, pr_id: int, sha: str, method: MergeMethod, message: str) -> None:
        if not message:
            pr = self.get_pull_request(pr_id)
            message = f"{pr.title}(#{pr.id})"
        payload: dict[str, object] = {"sha": sha, "squash": method == "squash"}
        if method == "squash":
            payload["squash_commit_message"] = message
        else:
            payload["merge_commit_message"] = message
        self._request("PUT", self._project_url(f"merge_requests/{pr_id}/merge"), payload=payload)
        log_event(LOGGER, "gitlab_merge_request_merged", repo=self.repository, pr_number=pr_id)

    def get_pull_request_diff(self, pr_id: int) -> Diff:
        payload = self._request("GET", self._project_url(f"merge_requests/{pr_id}/changes")).json()
        obj = require_object_dict(payload, what="merge request changes")
        changes: list[Change] = []
        for entry in require_list(obj.get("changes"), what="changes"):
            change = require_object_dict(entry, what="change")
            additions, deletions = _count_diff_lines(as_string(change.get("diff")))
            changes.append(
                Change(
                    old_file=as_string(change.get("old_path")),
                    new_file=as_string(change.get("new_path")),
                    additions=additions,
                    deletions=deletions,
                    changes=additions + deletions,
                )
            )
        return Diff(changes=tuple(changes))

    def list_pull_request_commits(self, pr_id: int) -> list[Commit]:
        return [
            Commit(
                sha=as_string(item.get("id")),
                message=as_string(item.get("message")),
                author=User(
                    id=0,
                    name=as_string(item.get("author_name")),
                    email=as_string(item.get("author_email")),
                ),
            )
            for item in self._list_all(
                self._project_url(f"merge_requests/{pr_id}/commits"), what="commits"
            )
        ]

    def list_labels(self, pr_id: int) -> list[IssueLabel]:
        return list(self.get_pull_request(pr_id).labels)

    def set_label(self, issue_type: IssueType, issue_id: int, label: str) -> None:
        self._request(
            "PUT",
            self._project_url(f"{_noteable_path(issue_type)}/{issue_id}"),
            payload={"add_labels": label},
        )

    def delete_label(self, issue_type: IssueType, issue_id: int, label: str) -> None:
        # Removing a label that is not set is accepted by GitLab as a no-op.
        self._request(
            "PUT",
            self._project_url(f"{_noteable_path(issue_type)}/{issue_id}"),
            payload={"remove_labels": label},
        )

    def get_branch(self, name: str) -> Branch:
        payload = self._request(
            "GET", self._project_url(f"repository/branches/{quote(name, safe='')}")
        ).json()
        obj = require_object_dict(payload, what="branch")
        return Branch(
            name=as_string(obj.get("name")),
            commit_sha=as_string(nested(obj, "commit", "id")),
        )

    def _project_url(self, path: str) -> str:
        return f"{self._api_url}/api/v4/projects/{quote(self.repository, safe='')}/{path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["PRIVATE-TOKEN"] = self._token
        return headers

    def _request(self, method: str, url: str, *, payload: object | None = None) -> httpx.Response:
        return request_http(self._http, method, url, headers=self._headers(), payload=payload)

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


def _noteable_path(issue_type: IssueType) -> str:
    return "merge_requests" if issue_type == "pull_request" else "issues"


def _user(value: object) -> User:
    obj = as_object_dict(value)
    if obj is None:
        return User(id=0, name="")
    return User(
        id=as_optional_int(obj.get("id"), field="user.id") or 0,
        name=as_string(obj.get("username")),
    )


def _count_diff_lines(diff: str) -> tuple[int, int]:
    additions = 0
    deletions = 0
    for line in diff.splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            additions += 1
        elif line.startswith("-"):
            deletions += 1
    return additions, deletions
