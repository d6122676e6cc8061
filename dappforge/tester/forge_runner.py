"""Foundry test execution.

Writes contracts and tests into a throw-away Foundry project, installs
forge-std and OpenZeppelin, runs ``forge test -vvv`` and parses the
``[PASS]`` / ``[FAIL]`` lines of its output.
"""

from __future__ import annotations

import re
import shutil
import tempfile
from pathlib import Path

from ..config import TesterConfig
from ..errors import ExternalServiceError
from ..models import Contract, TestFailure, TestFile, TestRunResult
from ..utils import console, run_command, safe_join

_PASS_RE = re.compile(r"\[PASS\]\s+(\w+)\(")
_FAIL_RE = re.compile(r"\[FAIL[.:]?\s*(?:Reason:\s*)?([^\]]*)\]\s+(\w+)\(")

_HARDHAT_MARKERS = (
    "describe(",
    "it(",
    'require("chai")',
    "require('chai')",
    'from "hardhat"',
    'from "chai"',
    "ethers.getSigners",
)

HARDHAT_ERROR = (
    "Test file is in Hardhat/JavaScript format. Please regenerate tests in Foundry format."
)

_FOUNDRY_TOML = """[profile.default]
src = "contracts"
out = "out"
libs = ["lib"]
solc = "{solc_version}"
"""

_REMAPPINGS = """forge-std/=lib/forge-std/src/
@openzeppelin/contracts/=lib/openzeppelin-contracts/contracts/
"""


def is_hardhat_test(content: str) -> bool:
    return any(marker in content for marker in _HARDHAT_MARKERS)


def foundry_test_name(name: str) -> str:
    """Normalise a test file name to the ``.t.sol`` convention."""
    if name.endswith(".t.sol"):
        return name
    return re.sub(r"\.(sol|ts|js)$", "", name) + ".t.sol"


def parse_forge_output(output: str) -> tuple[list[str], list[TestFailure]]:
    """Return ``(passed_names, failures)`` parsed from ``forge test`` output."""
    # forge repeats failing tests in its trailing summary
    passed = list(dict.fromkeys(_PASS_RE.findall(output)))
    failures: dict[str, str] = {}
    for reason, name in _FAIL_RE.findall(output):
        if name not in failures:
            failures[name] = reason.strip() or "Test failed"
    return passed, [TestFailure(name=n, reason=r) for n, r in failures.items()]


class ForgeTestRunner:
    """Runs Foundry tests for a contract/test set in an isolated temp project."""

    def __init__(self, config: TesterConfig | None = None) -> None:
        self.config = config or TesterConfig()

    async def run(self, contracts: list[Contract], tests: list[TestFile]) -> TestRunResult:
        """Execute the tests.

        Hardhat-style tests, missing tests and build failures come back as an
        unsuccessful :class:`TestRunResult` with ``error`` set.

        Raises:
            ExternalServiceError: If ``forge`` cannot be executed.
        """
        if not tests:
            return TestRunResult(error="No tests to run")
        for test in tests:
            if is_hardhat_test(test.content):
                return TestRunResult(error=HARDHAT_ERROR, raw_output=f"Error: {HARDHAT_ERROR}")

        project_dir = Path(tempfile.mkdtemp(prefix="dappforge-forge-"))
        try:
            self._write_project(project_dir, contracts, tests)
            if self.config.install_libs:
                await self._install_libs(project_dir)

            console.print(f"[cyan]Running forge test[/cyan] ({len(tests)} file(s))...")
            rc, stdout, stderr = await self._forge(["test", "-vvv"], project_dir, self.config.timeout)
        finally:
            shutil.rmtree(project_dir, ignore_errors=True)

        output = "\n".join(part for part in (stdout, stderr) if part)
        passed, failed = parse_forge_output(output)
        error = ""
        if rc == -1:
            error = "Test execution timed out"
        elif rc != 0 and not failed:
            error = f"forge test exited with code {rc}"

        result = TestRunResult(passed=passed, failed=failed, raw_output=output, error=error)
        console.print(
            f"[cyan]Tests:[/cyan] [green]{len(passed)} passed[/green], "
            f"[red]{len(failed)} failed[/red]"
        )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write_project(
        self, project_dir: Path, contracts: list[Contract], tests: list[TestFile]
    ) -> None:
        (project_dir / "contracts").mkdir(parents=True, exist_ok=True)
        (project_dir / "test").mkdir(parents=True, exist_ok=True)
        (project_dir / "lib").mkdir(parents=True, exist_ok=True)
        (project_dir / "foundry.toml").write_text(
            _FOUNDRY_TOML.format(solc_version=self.config.solc_version), encoding="utf-8"
        )
        (project_dir / "remappings.txt").write_text(_REMAPPINGS, encoding="utf-8")
        for contract in contracts:
            safe_join(project_dir / "contracts", f"{contract.name}.sol").write_text(
                contract.content, encoding="utf-8"
            )
        for test in tests:
            name = foundry_test_name(Path(test.name).name)
            safe_join(project_dir / "test", name).write_text(test.content, encoding="utf-8")

    async def _install_libs(self, project_dir: Path) -> None:
        rc, _, stderr = await self._forge(
            ["install", "foundry-rs/forge-std", "OpenZeppelin/openzeppelin-contracts", "--no-git"],
            project_dir,
            self.config.timeout,
        )
        if rc != 0:
            raise ExternalServiceError("forge", "library install failed", reason=stderr[-2000:])

    async def _forge(self, args: list[str], cwd: Path, timeout: int) -> tuple[int, str, str]:
        try:
            return await run_command([self.config.forge_binary, *args], cwd=cwd, timeout=timeout)
        except FileNotFoundError as exc:
            raise ExternalServiceError("forge", f"binary not found: {exc}") from exc
