"""DappForge build pipeline.

Sequences one build through its stages:

Stage 1: GENERATE -- Contracts, tests and pages from the prompt and plan.
Stage 2: COMPILE  -- solc, with a bounded fix loop on compilation errors.
Stage 3: SECURITY -- Pattern scan; error-severity findings enter a fix loop.
Stage 4: TEST     -- forge test, with a bounded fix loop on failures.
Stage 5: ASSEMBLE -- Materialise the artifact set as a project on disk.
Stage 6: DEPLOY   -- Optional local deployment on a session-owned anvil node.

Usage::

    python -m dappforge.pipeline "A counter anyone can increment" --plan plan.json
    python -m dappforge.pipeline "..." --plan plan.json --deploy --max-iterations 5
"""

from __future__ import annotations

import asyncio
import inspect
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from rich.panel import Panel

from .assembler import ProjectAssembler
from .chain.deployer import LocalDeployer as ForgeLocalDeployer
from .compiler import ImportCache, ImportResolver, SolcCompiler
from .config import Config
from .errors import DappForgeError, NoParseableArtifacts
from .fix_loop import FixLoop
from .generator import CodeGenerator
from .interfaces import Assembler, Compiler, Generator, LocalDeployer, Scanner, TestRunner
from .models import (
    BuildRequest,
    BuildResult,
    BuildStatus,
    Contract,
    DeploymentInfo,
    GeneratedCode,
    PipelineState,
    StageOutcome,
    StageResult,
)
from .security import SecurityScanner, blocking
from .session import SessionContext, SessionRegistry
from .tester import ForgeTestRunner
from .utils import (
    console,
    format_duration,
    load_json,
    print_error,
    print_stage_header,
    print_success,
    print_summary_table,
    print_warning,
)

STAGES = ("generate", "compile", "security", "test", "assemble", "deploy")


class BuildHalted(DappForgeError):
    """Raised between stages when the deadline passed or the session is closing."""


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Collaborator adapters injected into the pipeline and the transport."""

    generator: Generator
    compiler: Compiler
    scanner: Scanner
    test_runner: TestRunner
    assembler: Assembler
    deployer: LocalDeployer

    @classmethod
    def from_config(cls, config: Config) -> "Services":
        """Wire the real adapters. The import cache lives as long as the bundle."""
        cache = ImportCache()
        return cls(
            generator=CodeGenerator(config.ollama),
            compiler=SolcCompiler(config.compiler, ImportResolver(config.compiler, cache)),
            scanner=SecurityScanner(),
            test_runner=ForgeTestRunner(config.tester),
            assembler=ProjectAssembler(config.projects_dir),
            deployer=ForgeLocalDeployer(config.tester),
        )


# ---------------------------------------------------------------------------
# Per-build state
# ---------------------------------------------------------------------------


class _BuildRun:
    """Mutable state of one build, discarded once the result is produced."""

    def __init__(self, ctx: SessionContext, request: BuildRequest, timeout: float) -> None:
        self.ctx = ctx
        self.request = request
        self.timeout = timeout
        self.started = time.monotonic()
        self.deadline = self.started + timeout
        self.state = PipelineState.DRAFT
        self.code = request.existing_code or GeneratedCode()
        self.stages: dict[str, StageResult] = {}
        self.logs: list[str] = []
        self.compile_result = None
        self.security_warnings: list = []
        self.gas_estimate = None
        self.size_check = None
        self.test_result = None
        self.project_path: Optional[Path] = None
        self.deployment: Optional[DeploymentInfo] = None

    @property
    def project_id(self) -> str:
        return self.request.project_id

    @property
    def partial(self) -> bool:
        return any(stage.is_exhausted for stage in self.stages.values())


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class PipelineController:
    """Runs builds against a session's store and process manager.

    Attributes:
        services: Collaborator adapters.
        config: Global configuration (build timeout, default budget).
    """

    def __init__(self, services: Services, config: Config | None = None) -> None:
        self.services = services
        self.config = config or Config()

    async def run_build(self, ctx: SessionContext, request: BuildRequest) -> BuildResult:
        """Run every stage of *request* inside *ctx*.

        Builds of the same project in the same session are serialised;
        builds of different projects run concurrently.

        Returns:
            A :class:`BuildResult` whose ``status`` is ``success``, ``partial``
            (a fix budget ran out) or ``aborted`` (generation failed, the
            deadline passed, the session closed, or a stage errored).
        """
        async with ctx.build_lock(request.project_id):
            timeout = request.timeout_seconds or float(self.config.build.build_timeout)
            run = _BuildRun(ctx, request, timeout)
            ctx.project_store.get_or_create(request.project_id)
            try:
                await self._run_stages(run)
            except DappForgeError as exc:
                print_error(f"Build {request.project_id} aborted: {exc}")
                return await self._finish(run, BuildStatus.ABORTED, error=str(exc))

            if run.partial:
                return await self._finish(run, BuildStatus.PARTIAL)
            return await self._finish(run, BuildStatus.SUCCESS)

    # ------------------------------------------------------------------
    # Stage sequencing
    # ------------------------------------------------------------------

    async def _run_stages(self, run: _BuildRun) -> None:
        self._checkpoint(run, "generate")
        await self._generate(run)

        self._checkpoint(run, "compile")
        compiled = await self._compile(run)

        if compiled.is_exhausted:
            reason = "contracts do not compile"
            run.stages["security"] = StageResult.skipped("security", reason)
            run.stages["test"] = StageResult.skipped("test", reason)
        else:
            self._checkpoint(run, "security")
            await self._security(run)
            self._checkpoint(run, "test")
            await self._test(run)

        if run.partial and not run.request.proceed_on_partial:
            reason = "verification incomplete"
            run.stages["assemble"] = StageResult.skipped("assemble", reason)
            run.stages["deploy"] = StageResult.skipped("deploy", reason)
            return

        self._checkpoint(run, "assemble")
        await self._assemble(run)

        if not run.request.deploy_local:
            run.stages["deploy"] = StageResult.skipped("deploy", "not requested")
            return
        self._checkpoint(run, "deploy")
        await self._deploy(run)

    def _checkpoint(self, run: _BuildRun, stage: str) -> None:
        if run.ctx.closing:
            raise BuildHalted(f"Session closing; {stage} not started")
        if time.monotonic() >= run.deadline:
            raise BuildHalted(f"Build timed out after {run.timeout:g}s; {stage} not started")

    async def _report(
        self,
        run: _BuildRun,
        status: PipelineState,
        message: str,
        iteration: int = 0,
    ) -> None:
        run.state = status
        line = f"[{status.value}] {message}" + (f" (iteration {iteration})" if iteration else "")
        run.logs.append(line)
        callback = run.request.on_progress
        if callback is None:
            return
        outcome = callback(status.value, message, iteration)
        if inspect.isawaitable(outcome):
            await outcome

    def _fix_loop(
        self,
        run: _BuildRun,
        fixing: PipelineState,
        label: str,
    ) -> tuple[FixLoop, Any]:
        async def on_iteration(iteration: int) -> None:
            await self._report(run, fixing, f"Fixing {label}", iteration)

        return FixLoop(run.request.max_iterations), on_iteration

    # ------------------------------------------------------------------
    # Stage 1: generate
    # ------------------------------------------------------------------

    async def _generate(self, run: _BuildRun) -> None:
        print_stage_header(1, "generate")
        generator = self.services.generator
        request = run.request

        if run.code.has_contracts:
            await self._report(run, PipelineState.GENERATING, "Reusing existing contracts")
        else:
            await self._report(
                run, PipelineState.GENERATING, f"Generating {request.plan.contract_name}"
            )
            code = await generator.generate(request.prompt, request.plan, request.answers)
            if not code.has_contracts:
                raise NoParseableArtifacts("generator returned no contracts")
            run.code = code

        if not run.code.tests:
            try:
                tests = await generator.generate_tests(run.code.contracts)
            except NoParseableArtifacts as exc:
                print_warning(f"No tests generated: {exc}")
            else:
                run.code = run.code.model_copy(update={"tests": tests})

        run.stages["generate"] = StageResult.verified("generate", run.code)
        await self._report(
            run,
            PipelineState.GENERATING,
            f"Generated {len(run.code.contracts)} contract(s), "
            f"{len(run.code.tests)} test(s), {len(run.code.pages)} page(s)",
        )

    # ------------------------------------------------------------------
    # Stage 2: compile
    # ------------------------------------------------------------------

    async def _verify_compile(self, run: _BuildRun, contracts: list[Contract]) -> StageResult:
        result = await self.services.compiler.compile(contracts)
        if result.success:
            run.compile_result = result
            return StageResult.verified("compile", contracts)
        return StageResult.retryable("compile", result.errors, contracts)

    async def _compile_or_repair(
        self, run: _BuildRun, contracts: list[Contract]
    ) -> Optional[list[Contract]]:
        """Compile *contracts*, allowing one repair attempt. ``None`` if they still fail."""
        first = await self._verify_compile(run, contracts)
        if first.is_verified:
            return contracts
        console.print("  [yellow]Fixed contracts no longer compile; attempting one repair.[/yellow]")
        repaired = await self.services.generator.fix_compilation(contracts, first.errors)
        second = await self._verify_compile(run, repaired)
        return repaired if second.is_verified else None

    def _refresh_metrics(self, run: _BuildRun) -> None:
        result = run.compile_result
        if result is None or not result.bytecode:
            return
        scanner = self.services.scanner
        run.gas_estimate = scanner.estimate_gas(result.bytecode)
        run.size_check = scanner.check_size(result.deployed_bytecode or result.bytecode)

    async def _compile(self, run: _BuildRun) -> StageResult:
        print_stage_header(2, "compile")
        await self._report(run, PipelineState.COMPILING, "Compiling contracts")

        async def verify(contracts: list[Contract]) -> StageResult:
            return await self._verify_compile(run, contracts)

        async def fix(contracts: list[Contract], errors: list[str]) -> list[Contract]:
            return await self.services.generator.fix_compilation(contracts, errors)

        loop, on_iteration = self._fix_loop(run, PipelineState.FIXING_COMPILATION, "compilation errors")
        initial = await verify(run.code.contracts)
        result = await loop.run(
            "compile", run.code.contracts, initial, verify, fix, on_iteration=on_iteration
        )
        run.code = run.code.model_copy(update={"contracts": result.artifacts})
        run.stages["compile"] = result

        if result.is_verified:
            self._refresh_metrics(run)
            await self._report(run, PipelineState.COMPILING, "Compilation succeeded")
        else:
            await self._report(
                run, PipelineState.COMPILING, f"Compilation still failing: {len(result.errors)} error(s)"
            )
        return result

    # ------------------------------------------------------------------
    # Stage 3: security
    # ------------------------------------------------------------------

    async def _security(self, run: _BuildRun) -> StageResult:
        print_stage_header(3, "security")
        await self._report(run, PipelineState.CHECKING_SECURITY, "Scanning for vulnerabilities")
        scanner = self.services.scanner

        async def verify(contracts: list[Contract]) -> StageResult:
            findings = scanner.analyze_patterns(contracts)
            run.security_warnings = findings
            errors = blocking(findings)
            for finding in findings:
                style = "red" if finding in errors else "yellow"
                console.print(f"  [{style}]{finding.describe()}[/{style}]")
            if errors:
                return StageResult.retryable("security", [f.describe() for f in errors], contracts)
            return StageResult.verified("security", contracts)

        async def fix(contracts: list[Contract], _diagnostics: list[str]) -> Optional[list[Contract]]:
            fixed = await self.services.generator.fix_security(
                contracts, blocking(run.security_warnings)
            )
            return await self._compile_or_repair(run, fixed)

        loop, on_iteration = self._fix_loop(run, PipelineState.FIXING_SECURITY, "security findings")
        initial = await verify(run.code.contracts)
        result = await loop.run(
            "security", run.code.contracts, initial, verify, fix, on_iteration=on_iteration
        )
        run.code = run.code.model_copy(update={"contracts": result.artifacts})
        run.stages["security"] = result
        self._refresh_metrics(run)

        warnings = len(run.security_warnings)
        await self._report(
            run,
            PipelineState.CHECKING_SECURITY,
            "Security scan passed" + (f" with {warnings} warning(s)" if warnings else "")
            if result.is_verified
            else f"Security findings remain: {len(result.errors)}",
        )
        return result

    # ------------------------------------------------------------------
    # Stage 4: test
    # ------------------------------------------------------------------

    async def _test(self, run: _BuildRun) -> StageResult:
        print_stage_header(4, "test")
        await self._report(run, PipelineState.TESTING, "Running tests")

        async def verify(code: GeneratedCode) -> StageResult:
            result = await self.services.test_runner.run(code.contracts, code.tests)
            run.test_result = result
            console.print(
                f"  [dim]{len(result.passed)} passed, {len(result.failed)} failed[/dim]"
            )
            if result.success:
                return StageResult.verified("test", code)
            return StageResult.retryable("test", result.diagnostics(), code)

        async def fix(code: GeneratedCode, diagnostics: list[str]) -> Optional[GeneratedCode]:
            output = run.test_result.raw_output if run.test_result else ""
            contracts, tests = await self.services.generator.fix_tests(
                code.contracts, code.tests, output or "\n".join(diagnostics)
            )
            if contracts != code.contracts:
                contracts = await self._compile_or_repair(run, contracts)
                if contracts is None:
                    return None
            return code.model_copy(update={"contracts": contracts, "tests": tests})

        loop, on_iteration = self._fix_loop(run, PipelineState.FIXING_TESTS, "failing tests")
        initial = await verify(run.code)
        result = await loop.run("test", run.code, initial, verify, fix, on_iteration=on_iteration)
        run.code = result.artifacts
        run.stages["test"] = result
        self._refresh_metrics(run)

        await self._report(
            run,
            PipelineState.TESTING,
            "All tests passed" if result.is_verified else f"{len(result.errors)} test problem(s) remain",
        )
        return result

    # ------------------------------------------------------------------
    # Stage 5: assemble
    # ------------------------------------------------------------------

    async def _assemble(self, run: _BuildRun) -> None:
        print_stage_header(5, "assemble")
        await self._report(run, PipelineState.ASSEMBLING, "Assembling project")
        path = self.services.assembler.assemble(run.ctx.scoped_id(run.project_id), run.code)
        run.project_path = path
        run.ctx.project_store.update(run.project_id, {"project_path": str(path)})
        run.stages["assemble"] = StageResult.verified("assemble", str(path))
        await self._report(run, PipelineState.ASSEMBLED, f"Project assembled at {path}")

    # ------------------------------------------------------------------
    # Stage 6: deploy
    # ------------------------------------------------------------------

    async def _deploy(self, run: _BuildRun) -> None:
        print_stage_header(6, "deploy")
        await self._report(run, PipelineState.DEPLOYING, "Starting local chain")
        store = run.ctx.project_store

        handle = await run.ctx.process_manager.start(run.project_id)
        store.update(run.project_id, {"anvil_rpc_url": handle.rpc_url, "anvil_port": handle.port})

        signer = handle.accounts[0]
        compiled = run.compile_result
        contract_name = (compiled.contract_name if compiled else None) or run.request.plan.contract_name
        deployed = await self.services.deployer.deploy_to_chain(
            run.project_path, handle.rpc_url, signer.private_key, contract_name=contract_name
        )
        info = DeploymentInfo(
            contract_name=contract_name,
            contract_address=deployed.contract_address,
            tx_hash=deployed.tx_hash,
            rpc_url=handle.rpc_url,
            deployer=signer.address,
            abi=(compiled.abi if compiled and compiled.abi else []),
        )
        self.services.assembler.write_deployment(run.project_path, info)
        store.update(run.project_id, {"deployment_info": info})
        run.deployment = info
        run.stages["deploy"] = StageResult.verified("deploy", info)
        await self._report(
            run, PipelineState.DEPLOYED, f"{contract_name} deployed at {info.contract_address}"
        )

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    async def _finish(
        self,
        run: _BuildRun,
        status: BuildStatus,
        error: Optional[str] = None,
    ) -> BuildResult:
        if status == BuildStatus.ABORTED:
            final_state = PipelineState.ABORTED
        elif status == BuildStatus.PARTIAL:
            final_state = PipelineState.PARTIAL_SUCCESS
        else:
            final_state = run.state
        await self._report(run, final_state, error or f"Build finished: {status.value}")

        return BuildResult(
            status=status,
            state=final_state,
            project_id=run.project_id,
            code=run.code,
            stages=dict(run.stages),
            compile_result=run.compile_result,
            security_warnings=run.security_warnings,
            gas_estimate=run.gas_estimate,
            size_check=run.size_check,
            test_result=run.test_result,
            project_path=str(run.project_path) if run.project_path else None,
            deployment=run.deployment,
            fix_iterations=sum(stage.iterations for stage in run.stages.values()),
            elapsed_seconds=time.monotonic() - run.started,
            logs=list(run.logs),
            error=error,
        )


# ---------------------------------------------------------------------------
# Summary output
# ---------------------------------------------------------------------------


def print_build_summary(result: BuildResult) -> None:
    """Print the final build panel and summary table."""
    if result.status == BuildStatus.SUCCESS:
        border_style = "bold green"
        status_text = "[bold green]BUILD SUCCEEDED[/bold green]"
    elif result.status == BuildStatus.PARTIAL:
        border_style = "bold yellow"
        status_text = "[bold yellow]BUILD PARTIALLY VERIFIED[/bold yellow]"
    else:
        border_style = "bold red"
        status_text = "[bold red]BUILD ABORTED[/bold red]"

    lines = [status_text, "", f"Duration : {format_duration(result.elapsed_seconds)}"]
    for stage in STAGES:
        outcome = result.stages.get(stage)
        if outcome is None:
            continue
        detail = f" ({outcome.iterations} fix)" if outcome.iterations else ""
        lines.append(f"{stage:<9}: {outcome.outcome.value}{detail}")
        if outcome.outcome == StageOutcome.FAILED_EXHAUSTED:
            lines.extend(f"           [dim]{err}[/dim]" for err in outcome.errors[:5])
    if result.error:
        lines.extend(["", f"Error    : {result.error}"])

    console.print()
    console.print(Panel("\n".join(lines), title="[bold]Build Complete[/bold]", border_style=border_style))
    print_summary_table(result.summary_dict(), title="Build Summary")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


async def _run_cli(config: Config, request: BuildRequest) -> BuildResult:
    config.ensure_directories()
    registry = SessionRegistry(config.chain)
    ctx = registry.create()
    controller = PipelineController(Services.from_config(config), config)
    try:
        return await controller.run_build(ctx, request)
    finally:
        await registry.close(ctx.session_id)


def main() -> None:
    """CLI entry point for ``python -m dappforge.pipeline``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="DappForge -- generate, verify and assemble a dApp project",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m dappforge.pipeline \"A simple counter\" --plan plan.json\n"
            "  python -m dappforge.pipeline \"An NFT mint\" --plan plan.json --deploy\n"
        ),
    )
    parser.add_argument("prompt", help="What the dApp should do")
    parser.add_argument("--plan", required=True, help="Path to the project plan JSON file")
    parser.add_argument("--project-id", default="default", help="Project id (default: default)")
    parser.add_argument("--config", default=None, help="Configuration JSON (default: environment)")
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Fix attempts per stage (default: from configuration)",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Build deadline in seconds")
    parser.add_argument("--deploy", action="store_true", help="Deploy to a local anvil node")
    parser.add_argument(
        "--proceed-on-partial",
        action="store_true",
        help="Assemble (and deploy) even when a fix budget ran out",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero when the build is only partially verified",
    )

    args = parser.parse_args()

    plan_path = Path(args.plan)
    if not plan_path.exists():
        console.print(f"[bold red]Error:[/bold red] Plan file not found: {plan_path}")
        sys.exit(1)

    config = Config.load(Path(args.config)) if args.config else Config.from_env()
    try:
        request = BuildRequest.from_payload(
            {
                "prompt": args.prompt,
                "plan": load_json(plan_path),
                "project_id": args.project_id,
                "max_iterations": args.max_iterations or config.build.max_fix_iterations,
                "deploy_local": args.deploy,
                "proceed_on_partial": args.proceed_on_partial,
                "timeout_seconds": args.timeout,
            }
        )
    except DappForgeError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    result = asyncio.run(_run_cli(config, request))
    print_build_summary(result)

    if result.status == BuildStatus.SUCCESS:
        print_success("Build completed successfully!")
    elif result.status == BuildStatus.PARTIAL and not args.strict:
        print_warning("Build finished with unverified stages.")
    else:
        print_error("Build failed.")
        sys.exit(1)


if __name__ == "__main__":
    main()
