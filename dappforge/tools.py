"""Session-scoped tool handlers exposed by the transport.

Every handler receives the caller's :class:`SessionContext` explicitly and
touches only that session's project store and process manager.
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .chain.process_manager import DEFAULT_ACCOUNTS
from .config import Config
from .deployment import GitHubPublisher, VercelDeployer, generate_project_name, generate_repo_name
from .errors import ValidationError
from .models import BuildRequest, Contract, DeploymentInfo, GeneratedCode, ProjectState, TestFile
from .pipeline import PipelineController, Services
from .session import SessionContext

ToolHandler = Callable[[SessionContext, dict[str, Any]], Awaitable[dict[str, Any]]]
ParamsT = TypeVar("ParamsT", bound=BaseModel)

_CONTRACTS_PREFIX = "packages/foundry/contracts/"


class ChainParams(BaseModel):
    project_id: str = "default"
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    fork_url: Optional[str] = None


class ArtifactParams(BaseModel):
    """Inputs of the standalone compile, security and test tools."""
    contracts: list[Contract] = Field(..., min_length=1)
    tests: list[TestFile] = Field(default_factory=list)
    bytecode: Optional[str] = Field(default=None, description="Bytecode for gas and size estimates")


class DeployLocalParams(BaseModel):
    project_id: str = "default"
    contract_name: Optional[str] = Field(default=None, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    rpc_url: Optional[str] = Field(default=None, description="Target RPC; a session node is started when omitted")
    private_key: Optional[str] = Field(default=None, description="Defaults to the first dev account")
    chain_id: int = Field(default=31337, ge=1)
    abi: list[Any] = Field(default_factory=list)


def _parse(model: type[ParamsT], params: dict[str, Any]) -> ParamsT:
    try:
        return model.model_validate(params)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid parameters: {problems}") from exc


def _require(params: dict[str, Any], key: str) -> Any:
    value = params.get(key)
    if value in (None, ""):
        raise ValidationError(f"Missing required parameter: {key}")
    return value


def _project_id(params: dict[str, Any]) -> str:
    return str(params.get("project_id") or "default")


class SessionTools:
    """Dispatches tool calls to handlers bound to the caller's session.

    Args:
        services: Collaborator adapters shared by every session.
        config: Global configuration.
        publisher_factory: Builds a source-control publisher from a token.
        hosting_factory: Builds a hosting deployer from a token.
    """

    def __init__(
        self,
        services: Services,
        config: Config | None = None,
        *,
        publisher_factory: Callable[[str], GitHubPublisher] | None = None,
        hosting_factory: Callable[[str], VercelDeployer] | None = None,
    ) -> None:
        self.services = services
        self.config = config or Config()
        self.controller = PipelineController(services, self.config)
        self._publisher_factory = publisher_factory or (
            lambda token: GitHubPublisher(token, self.config.deploy)
        )
        self._hosting_factory = hosting_factory or (
            lambda token: VercelDeployer(token, self.config.deploy)
        )
        self._handlers: dict[str, ToolHandler] = {
            "build": self.build,
            "compile_contracts": self.compile_contracts,
            "check_security": self.check_security,
            "run_tests": self.run_tests,
            "start_chain": self.start_chain,
            "stop_chain": self.stop_chain,
            "list_projects": self.list_projects,
            "get_project": self.get_project,
            "assemble_project": self.assemble_project,
            "export_project": self.export_project,
            "deploy_local": self.deploy_local,
            "push_github": self.push_github,
            "deploy_vercel": self.deploy_vercel,
        }

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(
        self, ctx: SessionContext, method: str, params: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        handler = self._handlers.get(method) if isinstance(method, str) else None
        if handler is None:
            raise ValidationError(f"Unknown method: {method}")
        if params is not None and not isinstance(params, dict):
            raise ValidationError("params must be a JSON object")
        return await handler(ctx, dict(params or {}))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _assembled(ctx: SessionContext, project_id: str) -> tuple[ProjectState, Path]:
        state = ctx.project_store.get(project_id)
        if state is None:
            raise ValidationError(f"Unknown project: {project_id}")
        if not state.project_path:
            raise ValidationError(f"Project {project_id} has not been assembled")
        return state, Path(state.project_path)

    @staticmethod
    def _token(params: dict[str, Any], key: str, env_var: str) -> str:
        token = params.get(key) or os.environ.get(env_var, "")
        if not token:
            raise ValidationError(f"Missing {key} (or {env_var})")
        return token

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        progress: list[dict[str, Any]] = []

        def on_progress(status: str, message: str, iteration: int) -> None:
            progress.append({"status": status, "message": message, "iteration": iteration})

        params.setdefault("max_iterations", self.config.build.max_fix_iterations)
        request = BuildRequest.from_payload(params, on_progress=on_progress)
        result = await self.controller.run_build(ctx, request)
        payload = result.model_dump(mode="json")
        payload["progress"] = progress
        return payload

    # ------------------------------------------------------------------
    # Standalone verification
    # ------------------------------------------------------------------

    async def compile_contracts(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        args = _parse(ArtifactParams, params)
        result = await self.services.compiler.compile(args.contracts)
        return result.model_dump(mode="json")

    async def check_security(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        """Pattern findings, plus gas and size estimates when bytecode is given."""
        args = _parse(ArtifactParams, params)
        scanner = self.services.scanner
        warnings = scanner.analyze_patterns(args.contracts)
        payload: dict[str, Any] = {
            "warnings": [w.model_dump(mode="json") for w in warnings],
            "gas": None,
            "size": None,
        }
        if args.bytecode:
            payload["gas"] = scanner.estimate_gas(args.bytecode).model_dump(mode="json")
            payload["size"] = scanner.check_size(args.bytecode).model_dump(mode="json")
        return payload

    async def run_tests(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        args = _parse(ArtifactParams, params)
        if not args.tests:
            raise ValidationError("Missing required parameter: tests")
        result = await self.services.test_runner.run(args.contracts, args.tests)
        return result.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Chain
    # ------------------------------------------------------------------

    async def start_chain(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        args = _parse(ChainParams, params)
        project_id = args.project_id
        handle = await ctx.process_manager.start(project_id, port=args.port, fork_url=args.fork_url)
        ctx.project_store.update(
            project_id, {"anvil_rpc_url": handle.rpc_url, "anvil_port": handle.port}
        )
        return handle.summary()

    async def stop_chain(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        project_id = _project_id(params)
        await ctx.process_manager.stop(project_id)
        if project_id in ctx.project_store:
            ctx.project_store.update(project_id, {"anvil_rpc_url": None, "anvil_port": None})
        return {"project_id": project_id, "stopped": True}

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def list_projects(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "projects": [state.model_dump(mode="json") for state in ctx.project_store.list()],
            "chains": [handle.summary() for handle in ctx.process_manager.handles()],
        }

    async def get_project(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        project_id = str(_require(params, "project_id"))
        state = ctx.project_store.get(project_id)
        if state is None:
            raise ValidationError(f"Unknown project: {project_id}")
        return state.model_dump(mode="json")

    async def assemble_project(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        project_id = _project_id(params)
        try:
            code = GeneratedCode.model_validate(_require(params, "code"))
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid code: {exc}") from exc
        if not code.has_contracts:
            raise ValidationError("Cannot assemble a project without contracts")

        path = self.services.assembler.assemble(ctx.scoped_id(project_id), code)
        ctx.project_store.update(project_id, {"project_path": str(path)})
        files = self.services.assembler.list_files(path)
        return {"project_id": project_id, "project_path": str(path), "files": len(files)}

    async def export_project(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        project_id = _project_id(params)
        _, path = self._assembled(ctx, project_id)
        files = self.services.assembler.list_files(path)
        return {"project_id": project_id, "files": [f.model_dump() for f in files]}

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def deploy_local(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        """Deploy an assembled project with ``forge script``.

        Targets *rpc_url* when given (any EVM network); otherwise the
        session's node for the project is started or reused. The signer
        defaults to the first dev account.
        """
        args = _parse(DeployLocalParams, params)
        project_id = args.project_id
        _, path = self._assembled(ctx, project_id)

        contract_name = args.contract_name
        if not contract_name:
            names = [
                f.relative_path[len(_CONTRACTS_PREFIX):-len(".sol")]
                for f in self.services.assembler.list_files(path)
                if f.relative_path.startswith(_CONTRACTS_PREFIX) and f.relative_path.endswith(".sol")
            ]
            if not names:
                raise ValidationError(f"Project {project_id} has no contracts")
            contract_name = names[0]

        if args.rpc_url:
            rpc_url, network, accounts = args.rpc_url, "custom", list(DEFAULT_ACCOUNTS)
        else:
            handle = await ctx.process_manager.start(project_id)
            ctx.project_store.update(
                project_id, {"anvil_rpc_url": handle.rpc_url, "anvil_port": handle.port}
            )
            rpc_url, network, accounts = handle.rpc_url, "anvil", handle.accounts

        private_key = args.private_key or accounts[0].private_key
        deployer = next((a.address for a in accounts if a.private_key == private_key), "")
        deployed = await self.services.deployer.deploy_to_chain(
            path, rpc_url, private_key, contract_name=contract_name
        )
        info = DeploymentInfo(
            contract_name=contract_name,
            contract_address=deployed.contract_address,
            tx_hash=deployed.tx_hash,
            rpc_url=rpc_url,
            chain_id=args.chain_id,
            network=network,
            deployer=deployer,
            abi=args.abi,
        )
        self.services.assembler.write_deployment(path, info)
        ctx.project_store.update(project_id, {"deployment_info": info})
        return info.model_dump(mode="json")

    async def push_github(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        project_id = _project_id(params)
        state, path = self._assembled(ctx, project_id)
        publisher = self._publisher_factory(self._token(params, "github_token", "GITHUB_TOKEN"))
        files = self.services.assembler.list_files(path)

        if state.repo_url:
            result = await publisher.update_repo_files(
                state.repo_url, files, params.get("message") or "Update from DappForge"
            )
        else:
            contract = state.deployment_info.contract_name if state.deployment_info else project_id
            result = await publisher.create_repo_and_push(
                params.get("repo_name") or generate_repo_name(contract),
                params.get("description") or "Generated by DappForge",
                files,
            )
        ctx.project_store.update(project_id, {"repo_url": result.repo_url})
        return result.model_dump()

    async def deploy_vercel(self, ctx: SessionContext, params: dict[str, Any]) -> dict[str, Any]:
        project_id = _project_id(params)
        state = ctx.project_store.get(project_id)
        if state is None or not state.repo_url:
            raise ValidationError(f"Project {project_id} has not been pushed to GitHub")
        deployer = self._hosting_factory(self._token(params, "vercel_token", "VERCEL_TOKEN"))

        name = params.get("project_name") or generate_project_name(state.repo_url.rsplit("/", 1)[-1])
        result = await deployer.deploy(state.repo_url, name)
        ctx.project_store.update(project_id, {"deployment_url": result.deployment_url})
        return result.model_dump()
