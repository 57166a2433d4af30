"""Normalize GitHub and GitLab webhook deliveries into :class:`Webhook` events."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging

from cicd_operator.errors import InvalidWebhookError
from cicd_operator.models import (
    BranchRef,
    Comment,
    Issue,
    IssueComment,
    IssueLabel,
    PullRequest,
    PullRequestAction,
    PullRequestState,
    Push,
    Repository,
    ReviewState,
    User,
    Webhook,
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
)


LOGGER = logging.getLogger("cicd_operator.webhooks")

_GITHUB_PR_ACTIONS: dict[str, PullRequestAction] = {
    "opened": "open",
    "closed": "close",
    "reopened": "reopen",
    "synchronize": "synchronize",
    "labeled": "labeled",
    "unlabeled": "unlabeled",
}
_GITHUB_REVIEW_STATES: dict[str, ReviewState] = {
    "approved": "approved",
    "changes_requested": "unapproved",
}
_GITLAB_MR_ACTIONS: dict[str, PullRequestAction] = {
    "open": "open",
    "close": "close",
    "merge": "close",
    "reopen": "reopen",
    "update": "synchronize",
}


def validate_github_signature(secret: str, body: bytes, signature_header: str) -> None:
    if not signature_header.startswith("sha256="):
        raise InvalidWebhookError("missing or malformed X-Hub-Signature-256 header")
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature_header):
        raise InvalidWebhookError("webhook signature does not match")


def validate_gitlab_token(secret: str, token_header: str) -> None:
    if not hmac.compare_digest(secret.encode(), token_header.encode()):
        raise InvalidWebhookError("webhook token does not match")


def parse_github_webhook(
    headers: Mapping[str, str], body: bytes, *, secret: str | None = None
) -> Webhook | None:
    """Return the normalized event, or ``None`` when the event is not one we act on."""
    lowered = _lower_keys(headers)
    if secret:
        validate_github_signature(secret, body, lowered.get("x-hub-signature-256", ""))
    event = lowered.get("x-github-event", "")
    payload = _decode_body(body)

    try:
        webhook = _parse_github_event(event, payload)
    except PayloadError as exc:
        raise InvalidWebhookError(f"malformed GitHub {event} payload: {exc}") from exc
    _log_parsed("github", event, webhook)
    return webhook


def parse_gitlab_webhook(
    headers: Mapping[str, str], body: bytes, *, secret: str | None = None
) -> Webhook | None:
    lowered = _lower_keys(headers)
    if secret:
        validate_gitlab_token(secret, lowered.get("x-gitlab-token", ""))
    event = lowered.get("x-gitlab-event", "")
    payload = _decode_body(body)

    try:
        webhook = _parse_gitlab_event(event, payload)
    except PayloadError as exc:
        raise InvalidWebhookError(f"malformed GitLab {event} payload: {exc}") from exc
    _log_parsed("gitlab", event, webhook)
    return webhook


def _parse_github_event(event: str, payload: dict[str, object]) -> Webhook | None:
    repo = _github_repository(payload)
    sender = _github_user(payload.get("sender"))

    if event == "push":
        return Webhook(
            event_type="push",
            repo=repo,
            sender=sender,
            push=Push(ref=as_string(payload.get("ref")), sha=as_string(payload.get("after"))),
        )

    if event == "pull_request":
        action = _GITHUB_PR_ACTIONS.get(as_string(payload.get("action")), "other")
        label_changed: tuple[IssueLabel, ...] = ()
        label_name = as_string(nested(payload, "label", "name"))
        if action in {"labeled", "unlabeled"} and label_name:
            label_changed = (IssueLabel(name=label_name),)
        pr = github_pull_request(payload.get("pull_request"), action=action)
        return Webhook(
            event_type="pull_request",
            repo=repo,
            sender=sender,
            pull_request=replace(pr, label_changed=label_changed),
        )

    if event == "issue_comment":
        if as_string(payload.get("action")) != "created":
            return None
        issue_obj = as_object_dict(payload.get("issue"))
        comment_obj = as_object_dict(payload.get("comment"))
        if issue_obj is None or comment_obj is None:
            raise PayloadError("issue_comment requires issue and comment")
        pull_request = None
        if "pull_request" in issue_obj:
            pull_request = _github_issue_as_pull_request(issue_obj)
        return Webhook(
            event_type="issue_comment",
            repo=repo,
            sender=sender,
            issue_comment=IssueComment(
                comment=Comment(
                    body=as_string(comment_obj.get("body")),
                    created_at=parse_timestamp(comment_obj.get("created_at")),
                ),
                issue=Issue(pull_request=pull_request),
                author=_github_user(comment_obj.get("user")),
                comment_id=as_int(comment_obj.get("id"), field="comment.id"),
            ),
        )

    if event == "pull_request_review":
        if as_string(payload.get("action")) != "submitted":
            return None
        review_obj = as_object_dict(payload.get("review"))
        if review_obj is None:
            raise PayloadError("pull_request_review requires review")
        state = _GITHUB_REVIEW_STATES.get(as_string(review_obj.get("state")).lower())
        return Webhook(
            event_type="pull_request_review",
            repo=repo,
            sender=sender,
            issue_comment=IssueComment(
                comment=Comment(
                    body=as_string(review_obj.get("body")),
                    created_at=parse_timestamp(review_obj.get("submitted_at")),
                ),
                issue=Issue(pull_request=github_pull_request(payload.get("pull_request"))),
                author=_github_user(review_obj.get("user")),
                review_state=state,
                comment_id=as_int(review_obj.get("id"), field="review.id"),
            ),
        )

    return None


def _parse_gitlab_event(event: str, payload: dict[str, object]) -> Webhook | None:
    repo = Repository(
        name=as_string(nested(payload, "project", "path_with_namespace")),
        url=as_string(nested(payload, "project", "web_url")),
    )

    if event == "Push Hook":
        return Webhook(
            event_type="push",
            repo=repo,
            sender=User(
                id=as_optional_int(payload.get("user_id"), field="user_id") or 0,
                name=as_string(payload.get("user_username")),
            ),
            push=Push(ref=as_string(payload.get("ref")), sha=as_string(payload.get("after"))),
        )

    sender = _gitlab_user(payload.get("user"))

    if event == "Merge Request Hook":
        attrs = as_object_dict(payload.get("object_attributes"))
        if attrs is None:
            raise PayloadError("Merge Request Hook requires object_attributes")
        raw_action = as_string(attrs.get("action"))
        labels = gitlab_labels(payload.get("labels"))
        pr = gitlab_merge_request(attrs, labels=labels)

        if raw_action in {"approved", "unapproved"}:
            review_state: ReviewState = "approved" if raw_action == "approved" else "unapproved"
            return Webhook(
                event_type="pull_request_review",
                repo=repo,
                sender=sender,
                issue_comment=IssueComment(
                    comment=Comment(
                        body="",
                        created_at=parse_timestamp(attrs.get("updated_at"))
                        or datetime.now(timezone.utc),
                    ),
                    issue=Issue(pull_request=pr),
                    author=sender,
                    review_state=review_state,
                ),
            )

        action: PullRequestAction = _GITLAB_MR_ACTIONS.get(raw_action, "other")
        label_changed: tuple[IssueLabel, ...] = ()
        label_changes = nested(payload, "changes", "labels")
        if raw_action == "update" and as_object_dict(label_changes) is not None:
            previous = gitlab_labels(nested(label_changes, "previous"))
            current = gitlab_labels(nested(label_changes, "current"))
            added = [label for label in current if label not in previous]
            removed = [label for label in previous if label not in current]
            label_changed = tuple(added + removed)
            # GitLab may add and remove labels in one event; the consumer re-reads
            # the current label set rather than trusting this action.
            action = "labeled" if added else "unlabeled"
        pr = replace(pr, label_changed=label_changed, action=action)
        return Webhook(event_type="pull_request", repo=repo, sender=sender, pull_request=pr)

    if event == "Note Hook":
        attrs = as_object_dict(payload.get("object_attributes"))
        if attrs is None:
            raise PayloadError("Note Hook requires object_attributes")
        pull_request = None
        mr_obj = as_object_dict(payload.get("merge_request"))
        if as_string(attrs.get("noteable_type")) == "MergeRequest" and mr_obj is not None:
            pull_request = gitlab_merge_request(mr_obj, labels=gitlab_labels(mr_obj.get("labels")))
        return Webhook(
            event_type="issue_comment",
            repo=repo,
            sender=sender,
            issue_comment=IssueComment(
                comment=Comment(
                    body=as_string(attrs.get("note")),
                    created_at=parse_timestamp(attrs.get("created_at")),
                ),
                issue=Issue(pull_request=pull_request),
                author=sender,
                comment_id=as_optional_int(attrs.get("id"), field="note.id") or 0,
            ),
        )

    return None


def _github_repository(payload: dict[str, object]) -> Repository:
    return Repository(
        name=as_string(nested(payload, "repository", "full_name")),
        url=as_string(nested(payload, "repository", "html_url")),
    )


def _github_user(value: object) -> User:
    obj = as_object_dict(value)
    if obj is None:
        return User(id=0, name="")
    return User(
        id=as_optional_int(obj.get("id"), field="user.id") or 0,
        name=as_string(obj.get("login")),
        email=as_string(obj.get("email")),
    )


def _github_labels(value: object) -> tuple[IssueLabel, ...]:
    labels: list[IssueLabel] = []
    if isinstance(value, list):
        for entry in value:
            name = as_string(nested(as_object_dict(entry), "name"))
            if name and IssueLabel(name=name) not in labels:
                labels.append(IssueLabel(name=name))
    return tuple(labels)


def github_pull_request(value: object, *, action: PullRequestAction | None = None) -> PullRequest:
    """Build a :class:`PullRequest` from a GitHub REST or webhook pull request object."""
    obj = as_object_dict(value)
    if obj is None:
        raise PayloadError("expected pull_request object")
    state: PullRequestState = "open" if as_string(obj.get("state")) == "open" else "closed"
    mergeable = obj.get("mergeable")
    return PullRequest(
        id=as_int(obj.get("number"), field="pull_request.number"),
        title=as_string(obj.get("title")),
        state=state,
        author=_github_user(obj.get("user")),
        url=as_string(obj.get("html_url")),
        base=BranchRef(
            ref=as_string(nested(obj, "base", "ref")),
            sha=as_string(nested(obj, "base", "sha")),
        ),
        head=BranchRef(
            ref=as_string(nested(obj, "head", "ref")),
            sha=as_string(nested(obj, "head", "sha")),
        ),
        labels=_github_labels(obj.get("labels")),
        mergeable=mergeable is not False,
        action=action,
    )


def _github_issue_as_pull_request(issue: dict[str, object]) -> PullRequest:
    state: PullRequestState = "open" if as_string(issue.get("state")) == "open" else "closed"
    return PullRequest(
        id=as_int(issue.get("number"), field="issue.number"),
        title=as_string(issue.get("title")),
        state=state,
        author=_github_user(issue.get("user")),
        url=as_string(issue.get("html_url")),
        base=BranchRef(ref="", sha=""),
        head=BranchRef(ref="", sha=""),
        labels=_github_labels(issue.get("labels")),
    )


def _gitlab_user(value: object) -> User:
    obj = as_object_dict(value)
    if obj is None:
        return User(id=0, name="")
    return User(
        id=as_optional_int(obj.get("id"), field="user.id") or 0,
        name=as_string(obj.get("username")),
        email=as_string(obj.get("email")),
    )


def gitlab_labels(value: object) -> tuple[IssueLabel, ...]:
    """GitLab sends labels as objects with ``title`` in hooks and as plain strings in REST."""
    labels: list[IssueLabel] = []
    if isinstance(value, list):
        for entry in value:
            if isinstance(entry, str):
                name = entry
            else:
                name = as_string(nested(as_object_dict(entry), "title"))
            if name and IssueLabel(name=name) not in labels:
                labels.append(IssueLabel(name=name))
    return tuple(labels)


def gitlab_merge_request(
    attrs: dict[str, object], *, labels: tuple[IssueLabel, ...]
) -> PullRequest:
    state: PullRequestState = "open" if as_string(attrs.get("state")) == "opened" else "closed"
    author_obj = as_object_dict(attrs.get("author"))
    if author_obj is not None:
        author = _gitlab_user(author_obj)
    else:
        author = User(id=as_optional_int(attrs.get("author_id"), field="author_id") or 0, name="")
    head_sha = as_string(nested(attrs, "last_commit", "id")) or as_string(attrs.get("sha"))
    return PullRequest(
        id=as_int(attrs.get("iid"), field="merge_request.iid"),
        title=as_string(attrs.get("title")),
        state=state,
        author=author,
        url=as_string(attrs.get("url")) or as_string(attrs.get("web_url")),
        base=BranchRef(
            ref=as_string(attrs.get("target_branch")),
            sha=as_string(nested(attrs, "diff_refs", "base_sha")),
        ),
        head=BranchRef(ref=as_string(attrs.get("source_branch")), sha=head_sha),
        labels=labels,
        mergeable=as_string(attrs.get("merge_status")) in {"", "can_be_merged"},
    )


def _decode_body(body: bytes) -> dict[str, object]:
    try:
        decoded = json.loads(body)
    except ValueError as exc:
        raise InvalidWebhookError(f"webhook body is not valid JSON: {exc}") from exc
    obj = as_object_dict(decoded)
    if obj is None:
        raise InvalidWebhookError("webhook body must be a JSON object")
    return obj


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _log_parsed(provider: str, event: str, webhook: Webhook | None) -> None:
    log_event(
        LOGGER,
        "webhook_parsed",
        provider=provider,
        raw_event=event,
        event_type=webhook.event_type if webhook is not None else None,
        repo=webhook.repo.name if webhook is not None else None,
        sender=webhook.sender.name if webhook is not None else None,
    )
