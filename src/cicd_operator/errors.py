from __future__ import annotations


RATE_LIMIT_SENTINEL = "unixtime"
RATE_LIMIT_TEXT = "Rate limit exceeded"


class GitError(RuntimeError):
    """Base class for failures talking to a git provider."""


class NotInitializedError(GitError):
    """A backing store or collaborator was never set up."""


class NotFoundError(GitError):
    """Repository, pull request, ref, branch or user does not exist remotely."""


class LabelNotFoundError(NotFoundError):
    def __init__(self, label: str) -> None:
        super().__init__(f"Label does not exist: {label}")
        self.label = label


class UnsupportedGitTypeError(GitError):
    def __init__(self, git_type: str) -> None:
        super().__init__(f"git type {git_type} is not supported")
        self.git_type = git_type


class RateLimitError(GitError):
    """Provider quota is exhausted until ``reset_time`` (unix epoch seconds).

    The message keeps the ``unixtime::<epoch>.`` marker so callers that only
    see the text can still recover the reset time.
    """

    def __init__(self, reset_time: int, detail: str = "") -> None:
        message = (
            f"{RATE_LIMIT_SENTINEL}::{reset_time}. {RATE_LIMIT_TEXT}. "
            "Please increase the limit or wait until reset"
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.reset_time = reset_time


class UnauthorizedError(GitError):
    def __init__(self, user: str, repo: str) -> None:
        super().__init__(f"user {user} is not authorized for repository {repo}")
        self.user = user
        self.repo = repo


class HTTPRequestError(GitError):
    def __init__(self, method: str, url: str, status_code: int, body: str) -> None:
        super().__init__(
            f"error requesting api [{method}] {url}, code {status_code}, msg {body}"
        )
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body


class InvalidWebhookError(GitError):
    """An inbound webhook failed authentication or could not be decoded."""
