from __future__ import annotations

import httpx
import pytest

from cicd_operator.config import OperatorConfig
from cicd_operator.errors import GitError, NotInitializedError, UnsupportedGitTypeError
from cicd_operator.fake_git import FakeGitClient, FakeGitStore
from cicd_operator.git_client import git_client_factory, new_git_client
from cicd_operator.github_client import GitHubClient
from cicd_operator.gitlab_client import GitLabClient
from cicd_operator.resources import GitConfig, IntegrationConfig, IntegrationConfigSpec, ObjectMeta


def _config(git_type: str, *, api_url: str = "") -> IntegrationConfig:
    return IntegrationConfig(
        metadata=ObjectMeta(name="ic", namespace="ns"),
        spec=IntegrationConfigSpec(
            git=GitConfig(type=git_type, repository="o/r", api_url=api_url, token="tkn")
        ),
    )


def _http_client() -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))


@pytest.mark.parametrize(
    ("git_type", "expected"),
    [("github", GitHubClient), ("gitlab", GitLabClient)],
)
def test_new_git_client_selects_provider(git_type: str, expected: type) -> None:
    client = new_git_client(_config(git_type), http_client=_http_client())
    assert isinstance(client, expected)


def test_new_git_client_uses_default_api_url() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json=[])

    client = new_git_client(
        _config("github"), http_client=httpx.Client(transport=httpx.MockTransport(handler))
    )
    client.list_webhooks()

    assert seen == ["https://api.github.com/repos/o/r/hooks?per_page=100"]


def test_new_git_client_fake_requires_store() -> None:
    with pytest.raises(NotInitializedError, match="fake git store not initialized"):
        new_git_client(_config("fake"))

    client = new_git_client(_config("fake"), fake_store=FakeGitStore())
    assert isinstance(client, FakeGitClient)


def test_new_git_client_rejects_unknown_type() -> None:
    with pytest.raises(UnsupportedGitTypeError, match="git type bitbucket is not supported") as exc_info:
        new_git_client(_config("bitbucket"))
    assert isinstance(exc_info.value, GitError)


def test_git_client_factory_binds_store() -> None:
    store = FakeGitStore()
    store.add_repo("o/r").user_can_write["bob"] = True
    factory = git_client_factory(OperatorConfig(external_hostname="cicd"), fake_store=store)

    client = factory(_config("fake"))

    client.register_webhook("http://cicd/webhook/ns/ic")
    assert [entry.url for entry in store.repos["o/r"].webhooks.values()] == [
        "http://cicd/webhook/ns/ic"
    ]


def test_git_client_factory_shares_one_pool_per_tls_setting() -> None:
    factory = git_client_factory(OperatorConfig(external_hostname="cicd"))
    insecure = _config("gitlab")
    insecure.spec.git.tls_verify = False

    first = factory(_config("github"))
    second = factory(_config("github"))
    third = factory(insecure)

    assert isinstance(first, GitHubClient)
    assert isinstance(second, GitHubClient)
    assert isinstance(third, GitLabClient)
    assert first._http is second._http
    assert third._http is not first._http

    factory.close()
    assert first._http.is_closed
    assert third._http.is_closed


def test_git_client_factory_leaves_caller_client_open() -> None:
    http_client = _http_client()
    factory = git_client_factory(OperatorConfig(external_hostname="cicd"), http_client=http_client)

    client = factory(_config("github"))
    factory.close()

    assert isinstance(client, GitHubClient)
    assert client._http is http_client
    assert not http_client.is_closed
