from __future__ import annotations

from datetime import datetime, timedelta, timezone

from hypothesis import given, strategies as st
import pytest

from cicd_operator.approve import (
    APPROVED_LABEL,
    ApproveHandler,
    check_approval,
    generate_approved_comment,
    generate_help_comment,
    generate_user_unauthorized_comment,
    is_same_user,
)
from cicd_operator.chatops import Command
from cicd_operator.errors import UnauthorizedError
from cicd_operator.fake_git import FakeGitClient, FakeGitStore
from cicd_operator.git_client import GitClient
from cicd_operator.models import (
    BranchRef,
    Comment,
    Issue,
    IssueComment,
    IssueLabel,
    PullRequest,
    Repository,
    ReviewState,
    User,
    Webhook,
)
from cicd_operator.resources import GitConfig, IntegrationConfig, IntegrationConfigSpec, ObjectMeta

ALICE = User(1, "alice")
BOB = User(2, "bob")
EVE = User(3, "eve")


def _pr(*, labels: tuple[str, ...] = (), state: str = "open") -> PullRequest:
    return PullRequest(
        id=42,
        title="Fix bug",
        state="open" if state == "open" else "closed",
        author=ALICE,
        url="https://github.com/o/r/pull/42",
        base=BranchRef("main", "base"),
        head=BranchRef("feature", "abc123"),
        labels=tuple(IssueLabel(name) for name in labels),
    )


def _setup(*, labels: tuple[str, ...] = ()) -> tuple[FakeGitStore, ApproveHandler, IntegrationConfig]:
    store = FakeGitStore()
    repo = store.add_repo("o/r")
    repo.pull_requests[42] = _pr(labels=labels)
    repo.user_can_write.update({"alice": True, "bob": True, "eve": False})
    config = IntegrationConfig(
        metadata=ObjectMeta(name="ic", namespace="ns"),
        spec=IntegrationConfigSpec(git=GitConfig(type="fake", repository="o/r", token="tkn")),
    )
    handler = ApproveHandler(lambda cfg: FakeGitClient(store, cfg.spec.git.repository))
    return store, handler, config


def _comment_webhook(sender: User, body: str, pr: PullRequest) -> Webhook:
    return Webhook(
        event_type="issue_comment",
        repo=Repository("o/r", "https://github.com/o/r"),
        sender=sender,
        issue_comment=IssueComment(
            comment=Comment(body=body), issue=Issue(pull_request=pr), author=sender
        ),
    )


def _label_webhook(sender: User, pr: PullRequest, action: str) -> Webhook:
    changed = PullRequest(
        id=pr.id,
        title=pr.title,
        state=pr.state,
        author=pr.author,
        url=pr.url,
        base=pr.base,
        head=pr.head,
        labels=pr.labels,
        label_changed=(IssueLabel(APPROVED_LABEL),),
        action="labeled" if action == "labeled" else "unlabeled",
    )
    return Webhook(
        event_type="pull_request",
        repo=Repository("o/r", "https://github.com/o/r"),
        sender=sender,
        pull_request=changed,
    )


def _review_webhook(sender: User, state: ReviewState, pr: PullRequest) -> Webhook:
    return Webhook(
        event_type="pull_request_review",
        repo=Repository("o/r", "https://github.com/o/r"),
        sender=sender,
        issue_comment=IssueComment(
            comment=Comment(body=""),
            issue=Issue(pull_request=pr),
            author=sender,
            review_state=state,
        ),
    )


def _labels(store: FakeGitStore) -> list[str]:
    return [label.name for label in store.repos["o/r"].pull_requests[42].labels]


def _comment_bodies(store: FakeGitStore) -> list[str]:
    return [item.comment.body for item in store.repos["o/r"].comments.get(42, [])]


def test_reviewer_approve_command_sets_label_and_comments() -> None:
    store, handler, config = _setup()
    webhook = _comment_webhook(BOB, "/approve", _pr())

    handler.handle_chatops(Command("approve"), webhook, config)

    assert _labels(store) == [APPROVED_LABEL]
    bodies = _comment_bodies(store)
    assert len(bodies) == 1
    assert "bob approved this pull request" in bodies[0]
    assert bodies[0] == generate_approved_comment("bob")


def test_author_cannot_approve_own_pull_request() -> None:
    store, handler, config = _setup()
    webhook = _comment_webhook(ALICE, "/approve", _pr())

    handler.handle_chatops(Command("approve"), webhook, config)

    assert _labels(store) == []
    bodies = _comment_bodies(store)
    assert bodies == [generate_user_unauthorized_comment("alice")]
    assert "is not allowed to approve" in bodies[0]


def test_user_without_write_permission_cannot_approve() -> None:
    store, handler, config = _setup()

    handler.handle_chatops(Command("approve"), _comment_webhook(EVE, "/approve", _pr()), config)

    assert _labels(store) == []
    assert _comment_bodies(store) == [generate_user_unauthorized_comment("eve")]


def test_cancel_command_removes_label() -> None:
    store, handler, config = _setup(labels=(APPROVED_LABEL, "size/S"))

    handler.handle_chatops(
        Command("approve", ("cancel",)),
        _comment_webhook(BOB, "/approve cancel", _pr(labels=(APPROVED_LABEL,))),
        config,
    )

    assert _labels(store) == ["size/S"]
    assert "bob canceled the approval" in _comment_bodies(store)[0]


def test_cancel_without_label_is_not_an_error() -> None:
    store, handler, config = _setup()

    handler.handle_chatops(
        Command("approve", ("cancel",)), _comment_webhook(BOB, "/approve cancel", _pr()), config
    )

    assert _labels(store) == []
    assert len(_comment_bodies(store)) == 1


def test_malformed_command_posts_help() -> None:
    store, handler, config = _setup()

    handler.handle_chatops(
        Command("approve", ("please",)), _comment_webhook(BOB, "/approve please", _pr()), config
    )

    assert _labels(store) == []
    assert _comment_bodies(store) == [generate_help_comment()]


def test_commands_on_closed_pull_requests_are_ignored() -> None:
    store, handler, config = _setup()

    handler.handle_chatops(
        Command("approve"), _comment_webhook(BOB, "/approve", _pr(state="closed")), config
    )

    assert _labels(store) == []
    assert _comment_bodies(store) == []


def test_missing_token_skips_everything() -> None:
    store, handler, config = _setup()
    config.spec.git.token = None

    handler.handle_chatops(Command("approve"), _comment_webhook(BOB, "/approve", _pr()), config)
    handler.handle(_review_webhook(BOB, "approved", _pr()), config)

    assert _labels(store) == []
    assert _comment_bodies(store) == []


@pytest.mark.parametrize(
    ("state", "initial", "expected"),
    [("approved", (), [APPROVED_LABEL]), ("unapproved", (APPROVED_LABEL,), [])],
)
def test_review_events_drive_label(
    state: ReviewState, initial: tuple[str, ...], expected: list[str]
) -> None:
    store, handler, config = _setup(labels=initial)

    handler.handle(_review_webhook(BOB, state, _pr(labels=initial)), config)

    assert _labels(store) == expected
    assert len(_comment_bodies(store)) == 1


def test_unauthorized_label_addition_is_reverted() -> None:
    store, handler, config = _setup(labels=(APPROVED_LABEL,))

    handler.handle(_label_webhook(EVE, _pr(labels=(APPROVED_LABEL,)), "labeled"), config)

    assert _labels(store) == []
    assert _comment_bodies(store) == [generate_user_unauthorized_comment("eve")]


def test_unauthorized_label_removal_is_reverted() -> None:
    store, handler, config = _setup()

    handler.handle(_label_webhook(ALICE, _pr(), "unlabeled"), config)

    assert _labels(store) == [APPROVED_LABEL]
    assert _comment_bodies(store) == [generate_user_unauthorized_comment("alice")]


def test_authorized_label_change_is_left_alone() -> None:
    store, handler, config = _setup(labels=(APPROVED_LABEL,))

    handler.handle(_label_webhook(BOB, _pr(labels=(APPROVED_LABEL,)), "labeled"), config)

    assert _labels(store) == [APPROVED_LABEL]
    assert _comment_bodies(store) == []


def test_unrelated_label_change_is_ignored() -> None:
    store, handler, config = _setup()
    pr = _pr(labels=("size/S",))
    webhook = Webhook(
        event_type="pull_request",
        repo=Repository("o/r", ""),
        sender=EVE,
        pull_request=PullRequest(
            id=pr.id,
            title=pr.title,
            state=pr.state,
            author=pr.author,
            url=pr.url,
            base=pr.base,
            head=pr.head,
            labels=pr.labels,
            label_changed=(IssueLabel("size/S"),),
            action="labeled",
        ),
    )

    handler.handle(webhook, config)

    assert _comment_bodies(store) == []


def _seed_comments(store: FakeGitStore, items: list[IssueComment]) -> None:
    store.repos["o/r"].comments[42] = list(items)


def _history(*entries: tuple[str, ReviewState | None]) -> list[IssueComment]:
    """Build comments oldest first from ``(body, review_state)`` pairs."""
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    return [
        IssueComment(
            comment=Comment(body=body, created_at=base + timedelta(minutes=index)),
            issue=Issue(),
            author=BOB,
            review_state=state,
            comment_id=index + 1,
        )
        for index, (body, state) in enumerate(entries)
    ]


def test_check_converges_label_to_newest_decisive_comment() -> None:
    store, handler, config = _setup()
    _seed_comments(store, _history(("/approve", None), ("lgtm", None)))

    handler.handle_chatops(
        Command("approve", ("check",)), _comment_webhook(BOB, "/approve check", _pr()), config
    )

    assert _labels(store) == [APPROVED_LABEL]


def test_check_removes_label_when_latest_is_cancel() -> None:
    store, handler, config = _setup(labels=(APPROVED_LABEL,))
    _seed_comments(store, _history(("/approve", None), ("/approve cancel", None)))
    git_client: GitClient = FakeGitClient(store, "o/r")

    verdict = handler.check(BOB, _pr(labels=(APPROVED_LABEL,)), git_client)

    assert verdict is False
    assert _labels(store) == []


def test_check_approval_consensus_uses_newest_decisive_entry() -> None:
    newest_first = list(
        reversed(_history(("/approve cancel", None), ("", "approved"), ("/approve", None)))
    )
    assert check_approval(newest_first) is True

    newest_first = list(
        reversed(_history(("/approve", None), ("", "approved"), ("/approve cancel", None)))
    )
    assert check_approval(newest_first) is False

    assert check_approval([]) is False
    assert check_approval(_history(("just chatting", None), ("/other", None))) is False
    assert check_approval(_history(("/ci-approve", None))) is True
    assert check_approval(_history(("/approve check", None))) is False


_DECISIVE = st.sampled_from(
    [
        ("/approve", None, True),
        ("/ci-approve", None, True),
        ("/approve cancel", None, False),
        ("/ci-approve cancel", None, False),
        ("", "approved", True),
        ("", "unapproved", False),
    ]
)
_NOISE = st.sampled_from([("lgtm", None, None), ("/approve check", None, None), ("/retest", None, None)])


@given(st.lists(st.one_of(_DECISIVE, _NOISE), max_size=12))
def test_check_approval_matches_newest_decisive_entry(
    entries: list[tuple[str, ReviewState | None, bool | None]],
) -> None:
    comments = _history(*[(body, state) for body, state, _ in entries])
    expected = next(
        (verdict for _, _, verdict in reversed(entries) if verdict is not None),
        False,
    )
    assert check_approval(list(reversed(comments))) is expected


_USERS = st.builds(
    User,
    id=st.integers(min_value=0, max_value=3),
    name=st.sampled_from(["", "alice", "bob"]),
)


@given(_USERS, _USERS)
def test_is_same_user_is_symmetric(left: User, right: User) -> None:
    assert is_same_user(left, right) is is_same_user(right, left)


@given(_USERS)
def test_is_same_user_is_reflexive_for_identified_users(user: User) -> None:
    if user.id or user.name:
        assert is_same_user(user, user) is True


def test_is_same_user_prefers_ids() -> None:
    assert is_same_user(User(1, "alice"), User(1, "renamed")) is True
    assert is_same_user(User(1, "alice"), User(2, "alice")) is False
    assert is_same_user(User(0, "alice"), User(2, "alice")) is True
    assert is_same_user(User(0, ""), User(0, "")) is False


@given(
    sender=st.sampled_from([ALICE, BOB, EVE]),
    can_write=st.booleans(),
)
def test_authorize_requires_non_author_with_write_access(sender: User, can_write: bool) -> None:
    store, handler, config = _setup()
    store.repos["o/r"].user_can_write[sender.name] = can_write
    git_client = FakeGitClient(store, "o/r")

    allowed = sender != ALICE and can_write
    if allowed:
        handler.authorize(config, sender, ALICE, git_client)
    else:
        with pytest.raises(UnauthorizedError) as exc_info:
            handler.authorize(config, sender, ALICE, git_client)
        assert exc_info.value.user == sender.name
        assert exc_info.value.repo == "o/r"
