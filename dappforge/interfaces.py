"""Collaborator protocols consumed by the build engine.

The pipeline never talks to a concrete tool directly; it depends on these
structural types so adapters can be swapped or faked in tests.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

from .models import (
    CompileResult,
    Contract,
    DeploymentInfo,
    GasEstimate,
    GeneratedCode,
    LocalDeployResult,
    ProjectFile,
    ProjectPlan,
    SecurityWarning,
    SizeCheck,
    TestFile,
    TestRunResult,
)


class Generator(Protocol):
    async def generate(
        self, prompt: str, plan: ProjectPlan, answers: Optional[dict[str, str]] = None
    ) -> GeneratedCode: ...

    async def generate_tests(self, contracts: list[Contract]) -> list[TestFile]: ...

    async def fix_compilation(
        self, contracts: list[Contract], errors: list[str]
    ) -> list[Contract]: ...

    async def fix_security(
        self, contracts: list[Contract], warnings: list[SecurityWarning]
    ) -> list[Contract]: ...

    async def fix_tests(
        self, contracts: list[Contract], tests: list[TestFile], output: str
    ) -> tuple[list[Contract], list[TestFile]]: ...


class Compiler(Protocol):
    async def compile(self, contracts: list[Contract]) -> CompileResult: ...


class Scanner(Protocol):
    def analyze_patterns(self, contracts: list[Contract]) -> list[SecurityWarning]: ...

    def estimate_gas(self, bytecode: str) -> GasEstimate: ...

    def check_size(self, bytecode: str) -> SizeCheck: ...


class TestRunner(Protocol):
    async def run(self, contracts: list[Contract], tests: list[TestFile]) -> TestRunResult: ...


class Assembler(Protocol):
    def assemble(
        self,
        scoped_project_id: str,
        code: GeneratedCode,
        deployment: Optional[DeploymentInfo] = None,
    ) -> Path: ...

    def list_files(self, project_path: Path) -> list[ProjectFile]: ...

    def write_deployment(self, project_path: Path, deployment: DeploymentInfo) -> Path: ...

    def cleanup(self, project_path: Path) -> None: ...


class LocalDeployer(Protocol):
    async def deploy_to_chain(
        self,
        project_path: Path,
        rpc_url: str,
        private_key: str,
        contract_name: Optional[str] = None,
    ) -> LocalDeployResult: ...
