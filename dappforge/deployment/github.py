"""Publish an assembled project to a new or existing GitHub repository.

Uses the GitHub REST git-data API: one blob per file (created
concurrently), a tree on top of the branch head, a commit, and a ref
update.
"""

from __future__ import annotations

import asyncio
import base64
import re
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel

from ..config import DeployConfig
from ..errors import AuthError, ExternalServiceError, NameTaken, ValidationError
from ..models import ProjectFile
from ..utils import console, sanitize_name

_REPO_URL_RE = re.compile(r"github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$")


class RepoResult(BaseModel):
    """Where the files ended up."""

    repo_url: str
    repo_name: str
    owner: str
    commit_sha: str


def generate_repo_name(contract_name: str) -> str:
    """``"MyToken"`` -> ``"my-token-dapp-<base36 timestamp>"``."""
    base = sanitize_name(re.sub(r"([A-Z])", r"-\1", contract_name)) or "project"
    return f"{base}-dapp-{_base36(int(time.time() * 1000))}"


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def parse_repo_url(repo_url: str) -> tuple[str, str]:
    match = _REPO_URL_RE.search(repo_url)
    if not match:
        raise ValidationError(f"Invalid GitHub repository URL: {repo_url}")
    return match.group(1), match.group(2)


class GitHubPublisher:
    """Creates repositories and pushes file sets for one access token.

    Args:
        token: GitHub access token.
        config: Provider settings (API URL, name retries, settle delay).
        transport: Optional ``httpx`` transport, used by tests.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        token: str,
        config: DeployConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not token:
            raise ValidationError("A GitHub token is required")
        self.token = token
        self.config = config or DeployConfig()
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.github_api_url,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github+json",
            },
            timeout=httpx.Timeout(30.0, connect=10.0),
            transport=self._transport,
        )

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict[str, Any]:
        if response.status_code in (401, 403):
            raise AuthError(
                "github",
                "authentication failed" if response.status_code == 401 else "access denied",
                reason=f"HTTP {response.status_code}",
            )
        if response.status_code >= 400:
            raise ExternalServiceError(
                "github",
                f"{action} failed (HTTP {response.status_code})",
                reason=response.text[:500],
            )
        return response.json()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_repo_and_push(
        self,
        repo_name: str,
        description: str,
        files: list[ProjectFile],
        message: str = "Initial commit from DappForge",
    ) -> RepoResult:
        """Create a public repository and commit *files* to its default branch.

        Raises:
            AuthError: If the token is rejected. Never retried.
            NameTaken: If the name (and every suffixed variant) is taken.
            ExternalServiceError: For any other API failure.
        """
        async with self._client() as client:
            user = self._check(await client.get("/user"), "authenticate")
            owner = user["login"]

            repo: dict[str, Any] | None = None
            for attempt in range(self.config.max_name_retries + 1):
                name = repo_name if attempt == 0 else f"{repo_name}-{secrets.token_hex(2)}"
                response = await client.post(
                    "/user/repos",
                    json={"name": name, "description": description, "private": False, "auto_init": True},
                )
                if response.status_code == 422:
                    console.print(f"[yellow]Repository name {name} is taken[/yellow]")
                    continue
                repo = self._check(response, "create repository")
                break
            if repo is None:
                raise NameTaken(repo_name)

            if self.config.repo_settle_seconds:
                await self._sleep(self.config.repo_settle_seconds)

            branch = repo.get("default_branch") or "main"
            sha = await self._commit_files(client, owner, repo["name"], branch, files, message)

        console.print(f"[green]Pushed {len(files)} file(s) to[/green] {repo['html_url']}")
        return RepoResult(repo_url=repo["html_url"], repo_name=repo["name"], owner=owner, commit_sha=sha)

    async def update_repo_files(
        self,
        repo_url: str,
        files: list[ProjectFile],
        message: str = "Update from DappForge",
        branch: str = "main",
    ) -> RepoResult:
        """Commit *files* on top of an existing repository's branch."""
        owner, repo_name = parse_repo_url(repo_url)
        async with self._client() as client:
            sha = await self._commit_files(client, owner, repo_name, branch, files, message)
        return RepoResult(repo_url=repo_url, repo_name=repo_name, owner=owner, commit_sha=sha)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _commit_files(
        self,
        client: httpx.AsyncClient,
        owner: str,
        repo: str,
        branch: str,
        files: list[ProjectFile],
        message: str,
    ) -> str:
        prefix = f"/repos/{owner}/{repo}/git"
        ref = self._check(await client.get(f"{prefix}/ref/heads/{branch}"), "read branch")
        head_sha = ref["object"]["sha"]
        head = self._check(await client.get(f"{prefix}/commits/{head_sha}"), "read commit")

        async def _blob(file: ProjectFile) -> dict[str, str]:
            response = await client.post(
                f"{prefix}/blobs",
                json={
                    "content": base64.b64encode(file.content.encode("utf-8")).decode("ascii"),
                    "encoding": "base64",
                },
            )
            blob = self._check(response, f"upload {file.relative_path}")
            return {"path": file.relative_path, "mode": "100644", "type": "blob", "sha": blob["sha"]}

        tree_entries = await asyncio.gather(*(_blob(f) for f in files))

        tree = self._check(
            await client.post(
                f"{prefix}/trees",
                json={"base_tree": head["tree"]["sha"], "tree": list(tree_entries)},
            ),
            "create tree",
        )
        commit = self._check(
            await client.post(
                f"{prefix}/commits",
                json={"message": message, "tree": tree["sha"], "parents": [head_sha]},
            ),
            "create commit",
        )
        self._check(
            await client.patch(f"{prefix}/refs/heads/{branch}", json={"sha": commit["sha"]}),
            "update branch",
        )
        return commit["sha"]
