"""Deploy a GitHub-hosted project's front-end to Vercel.

Reuses the named Vercel project when it exists (triggering a deployment
from its linked repository), otherwise creates it, then polls the
deployment until it settles.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from ..config import DeployConfig
from ..errors import AuthError, ExternalServiceError, ValidationError
from ..utils import console, sanitize_name
from .github import parse_repo_url

FAILED_STATES = frozenset({"ERROR", "CANCELED"})


class HostingResult(BaseModel):
    """Outcome of a hosting deployment."""

    deployment_url: str
    project_id: str
    ready: bool


def generate_project_name(base: str) -> str:
    return sanitize_name(base)[:50]


class VercelDeployer:
    """Vercel REST API client for one access token."""

    def __init__(
        self,
        token: str,
        config: DeployConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not token:
            raise ValidationError("A Vercel token is required")
        self.token = token
        self.config = config or DeployConfig()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.vercel_api_url,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=httpx.Timeout(30.0, connect=10.0),
            transport=self._transport,
        )

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict[str, Any]:
        if response.status_code in (401, 403):
            raise AuthError("vercel", "credentials rejected", reason=f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ExternalServiceError(
                "vercel", f"{action} failed (HTTP {response.status_code})", reason=response.text[:500]
            )
        return response.json()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def deploy(self, repo_url: str, project_name: str) -> HostingResult:
        """Deploy *repo_url* as Vercel project *project_name*.

        Returns the ready URL, or ``https://<project>.vercel.app`` when the
        deployment is still building at the poll timeout.

        Raises:
            AuthError: If the token is rejected.
            ExternalServiceError: If the deployment ends in ``ERROR`` or
                ``CANCELED``, or the API fails otherwise.
        """
        owner, repo = parse_repo_url(repo_url)
        name = generate_project_name(project_name)
        fallback_url = f"https://{name}.vercel.app"

        async with self._client() as client:
            existing = await client.get(f"/v9/projects/{name}")
            if existing.status_code == 200:
                project = existing.json()
                deployment_id = await self._redeploy(client, project, name)
            elif existing.status_code == 404:
                project = await self._create_project(client, name, f"{owner}/{repo}")
                deployment_id = await self._latest_deployment(client, project["id"])
            else:
                self._check(existing, "look up project")
                raise ExternalServiceError("vercel", f"unexpected status {existing.status_code}")

            if deployment_id is None:
                return HostingResult(deployment_url=fallback_url, project_id=project["id"], ready=False)

            url = await self._wait_for_deployment(client, deployment_id)

        if url is None:
            console.print(f"[yellow]Deployment still building; using {fallback_url}[/yellow]")
            return HostingResult(deployment_url=fallback_url, project_id=project["id"], ready=False)
        console.print(f"[green]Deployed to[/green] {url}")
        return HostingResult(deployment_url=url, project_id=project["id"], ready=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _redeploy(self, client: httpx.AsyncClient, project: dict[str, Any], name: str) -> str:
        repo_id = (project.get("link") or {}).get("repoId")
        if not repo_id:
            raise ExternalServiceError("vercel", f"project {name} has no linked repository")
        response = await client.post(
            "/v13/deployments",
            json={
                "name": name,
                "project": project["id"],
                "target": "production",
                "gitSource": {"type": "github", "repoId": repo_id, "ref": "main"},
            },
        )
        deployment = self._check(response, "trigger deployment")
        return deployment.get("uid") or deployment["id"]

    async def _create_project(self, client: httpx.AsyncClient, name: str, repo_full_name: str) -> dict[str, Any]:
        """Create the project, retrying while GitHub's repo is not yet visible."""
        last_error = ""
        for attempt in range(self.config.max_name_retries):
            if attempt:
                await self._sleep(5.0)
            response = await client.post(
                "/v9/projects",
                json={
                    "name": name,
                    "framework": "nextjs",
                    "gitRepository": {"type": "github", "repo": repo_full_name},
                    "rootDirectory": "packages/nextjs",
                    "buildCommand": "yarn build",
                    "installCommand": "yarn install",
                },
            )
            if response.is_success:
                return response.json()
            if response.status_code in (401, 403):
                self._check(response, "create project")

            try:
                last_error = (response.json().get("error") or {}).get("message", "")
            except ValueError:
                last_error = response.text
            lowered = last_error.lower()
            if "repository" not in lowered and "not found" not in lowered:
                break

        raise ExternalServiceError("vercel", last_error or "failed to create project")

    async def _latest_deployment(self, client: httpx.AsyncClient, project_id: str) -> Optional[str]:
        await self._sleep(self.config.vercel_poll_interval)
        response = await client.get("/v6/deployments", params={"projectId": project_id, "limit": 1})
        if not response.is_success:
            return None
        deployments = response.json().get("deployments") or []
        if not deployments:
            return None
        return deployments[0].get("uid") or deployments[0].get("id")

    async def _wait_for_deployment(self, client: httpx.AsyncClient, deployment_id: str) -> Optional[str]:
        """Poll until READY (returns URL), a failed state (raises) or timeout (``None``)."""
        deadline = self._clock() + self.config.vercel_poll_timeout
        while True:
            deployment = self._check(
                await client.get(f"/v13/deployments/{deployment_id}"), "check deployment"
            )
            state = deployment.get("readyState")
            if state == "READY":
                return f"https://{deployment['url']}"
            if state in FAILED_STATES:
                raise ExternalServiceError("vercel", f"deployment {state.lower()}", reason=state)
            if self._clock() >= deadline:
                return None
            await self._sleep(self.config.vercel_poll_interval)
