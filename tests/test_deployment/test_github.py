"""Unit tests for GitHubPublisher (dappforge.deployment.github).

Tests cover:
- Repository name generation and URL parsing
- create_repo_and_push: full git-data sequence, name retries, NameTaken
- Authentication failures are never retried
- update_repo_files commits on top of the existing branch
"""

from __future__ import annotations

import base64
import json
import re
from unittest.mock import AsyncMock

import httpx
import pytest

from dappforge.config import DeployConfig
from dappforge.deployment import GitHubPublisher, generate_repo_name, parse_repo_url
from dappforge.errors import AuthError, ExternalServiceError, NameTaken, ValidationError
from dappforge.models import ProjectFile

FILES = [
    ProjectFile(relative_path="packages/foundry/contracts/Counter.sol", content="contract Counter {}"),
    ProjectFile(relative_path="packages/nextjs/app/page.tsx", content="export default () => null;"),
]


class FakeGitHub:
    """Routes GitHub API calls and records them."""

    def __init__(self, taken: int = 0, user_status: int = 200) -> None:
        self.taken = taken
        self.user_status = user_status
        self.calls: list[tuple[str, str, dict]] = []
        self.blobs: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else {}
        self.calls.append((request.method, path, body))

        if path == "/user":
            if self.user_status != 200:
                return httpx.Response(self.user_status, json={"message": "Bad credentials"})
            return httpx.Response(200, json={"login": "octo"})
        if path == "/user/repos":
            if self.taken > 0:
                self.taken -= 1
                return httpx.Response(422, json={"message": "name already exists"})
            name = body["name"]
            return httpx.Response(
                201,
                json={"name": name, "html_url": f"https://github.com/octo/{name}", "default_branch": "main"},
            )
        if request.method == "GET" and path.endswith("/git/ref/heads/main"):
            return httpx.Response(200, json={"object": {"sha": "head1"}})
        if request.method == "GET" and path.endswith("/git/commits/head1"):
            return httpx.Response(200, json={"sha": "head1", "tree": {"sha": "tree0"}})
        if path.endswith("/git/blobs"):
            self.blobs.append(base64.b64decode(body["content"]).decode("utf-8"))
            return httpx.Response(201, json={"sha": f"blob{len(self.blobs)}"})
        if path.endswith("/git/trees"):
            return httpx.Response(201, json={"sha": "tree1"})
        if path.endswith("/git/commits"):
            return httpx.Response(201, json={"sha": "commit1"})
        if request.method == "PATCH" and path.endswith("/git/refs/heads/main"):
            return httpx.Response(200, json={"object": {"sha": body["sha"]}})
        return httpx.Response(404, json={"message": "Not Found"})


def publisher(fake: FakeGitHub, **config) -> GitHubPublisher:
    return GitHubPublisher(
        "ghp_test",
        DeployConfig(repo_settle_seconds=1.0, **config),
        transport=httpx.MockTransport(fake),
        sleep=AsyncMock(),
    )


class TestNames:
    @pytest.mark.unit
    def test_generate_repo_name(self):
        name = generate_repo_name("MyToken")
        assert re.fullmatch(r"my-token-dapp-[0-9a-z]+", name)

    @pytest.mark.unit
    def test_generate_repo_name_odd_input(self):
        assert generate_repo_name("NFT_Market 2").startswith("n-f-t-market-2-dapp-")
        assert generate_repo_name("").startswith("project-dapp-")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "url",
        [
            "https://github.com/octo/counter-dapp",
            "https://github.com/octo/counter-dapp.git",
            "https://github.com/octo/counter-dapp/",
        ],
    )
    def test_parse_repo_url(self, url):
        assert parse_repo_url(url) == ("octo", "counter-dapp")

    @pytest.mark.unit
    def test_parse_invalid_url(self):
        with pytest.raises(ValidationError):
            parse_repo_url("https://gitlab.com/octo/counter")

    @pytest.mark.unit
    def test_token_required(self):
        with pytest.raises(ValidationError):
            GitHubPublisher("")


class TestCreateRepoAndPush:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_sequence(self):
        fake = FakeGitHub()
        pub = publisher(fake)

        result = await pub.create_repo_and_push("counter-dapp", "A counter", FILES)

        assert result.repo_url == "https://github.com/octo/counter-dapp"
        assert result.owner == "octo"
        assert result.commit_sha == "commit1"
        assert sorted(fake.blobs) == sorted(f.content for f in FILES)

        tree_call = next(body for method, path, body in fake.calls if path.endswith("/git/trees"))
        assert tree_call["base_tree"] == "tree0"
        assert {entry["path"] for entry in tree_call["tree"]} == {f.relative_path for f in FILES}

        commit_call = next(body for method, path, body in fake.calls if path.endswith("/git/commits") and method == "POST")
        assert commit_call["parents"] == ["head1"]
        assert fake.calls[-1][0] == "PATCH"
        pub._sleep.assert_awaited_once_with(1.0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_name_taken_then_suffixed(self):
        fake = FakeGitHub(taken=1)
        result = await publisher(fake).create_repo_and_push("counter-dapp", "", FILES)

        names = [body["name"] for method, path, body in fake.calls if path == "/user/repos"]
        assert names[0] == "counter-dapp"
        assert re.fullmatch(r"counter-dapp-[0-9a-f]{4}", names[1])
        assert result.repo_name == names[1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_name_taken_exhausted(self):
        fake = FakeGitHub(taken=10)
        with pytest.raises(NameTaken):
            await publisher(fake, max_name_retries=2).create_repo_and_push("counter-dapp", "", FILES)
        attempts = [c for c in fake.calls if c[1] == "/user/repos"]
        assert len(attempts) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_credentials_not_retried(self):
        fake = FakeGitHub(user_status=401)
        with pytest.raises(AuthError) as exc_info:
            await publisher(fake).create_repo_and_push("counter-dapp", "", FILES)
        assert exc_info.value.status_code == 401
        assert len(fake.calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/user":
                return httpx.Response(200, json={"login": "octo"})
            return httpx.Response(500, text="oops")

        pub = GitHubPublisher("ghp_test", transport=httpx.MockTransport(handler), sleep=AsyncMock())
        with pytest.raises(ExternalServiceError) as exc_info:
            await pub.create_repo_and_push("counter-dapp", "", FILES)
        assert not isinstance(exc_info.value, AuthError)
        assert exc_info.value.provider == "github"


class TestUpdateRepoFiles:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_commits_to_existing_repo(self):
        fake = FakeGitHub()
        result = await publisher(fake).update_repo_files(
            "https://github.com/octo/counter-dapp", FILES, "Update"
        )

        assert result.commit_sha == "commit1"
        assert result.repo_name == "counter-dapp"
        assert not any(path == "/user/repos" for _, path, _ in fake.calls)
        assert fake.calls[0][1] == "/repos/octo/counter-dapp/git/ref/heads/main"
