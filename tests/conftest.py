"""Shared pytest fixtures for the DappForge test suite.

Provides reusable fixtures for:
- Temporary workspace and project directories
- A sample project plan and generated artifact set
- Scripted fake collaborators (generator, compiler, test runner, deployer)
- Mock subprocess helpers
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from dappforge.assembler import ProjectAssembler
from dappforge.chain.ports import PortAllocator
from dappforge.config import ChainConfig, Config
from dappforge.errors import NoParseableArtifacts
from dappforge.models import (
    CompileResult,
    Contract,
    GeneratedCode,
    LocalDeployResult,
    Page,
    ProjectPlan,
    SecurityWarning,
    TestFailure,
    TestFile,
    TestRunResult,
)
from dappforge.pipeline import Services
from dappforge.security import SecurityScanner


COUNTER_SOURCE = """// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

contract Counter {
    uint256 public count;

    function increment() external {
        count += 1;
    }
}
"""

COUNTER_TEST_SOURCE = """// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

import "forge-std/Test.sol";
import "../contracts/Counter.sol";

contract CounterTest is Test {
    function test_Increment() public {
        Counter c = new Counter();
        c.increment();
        assertEq(c.count(), 1);
    }
}
"""


# ---------------------------------------------------------------------------
# Paths & configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary DappForge workspace directory."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def config(workspace: Path) -> Config:
    """Configuration rooted in the temporary workspace, with a small port range."""
    return Config(
        workspace_dir=workspace,
        chain=ChainConfig(port_range_start=23100, port_range_end=23109, startup_timeout=1.0),
    )


@pytest.fixture
def free_ports() -> PortAllocator:
    """Port allocator over a small range whose availability check always reports free."""
    return PortAllocator(23100, 23109, is_free=AsyncMock(return_value=True))


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_plan() -> ProjectPlan:
    return ProjectPlan(
        contract_name="Counter",
        description="A counter anyone can increment",
        features=["Increment the counter", "Read the current count"],
        pages=[{"path": "app/page.tsx", "description": "Shows the count and an increment button"}],
    )


@pytest.fixture
def counter_code() -> GeneratedCode:
    return GeneratedCode(
        contracts=[Contract(name="Counter", content=COUNTER_SOURCE)],
        tests=[TestFile(name="Counter.t.sol", content=COUNTER_TEST_SOURCE)],
        pages=[Page(path="app/page.tsx", content="export default function Home() { return null; }\n")],
    )


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeGenerator:
    """Generator whose responses are scripted per operation.

    Each ``*_results`` list is consumed in order; an item that is an
    exception instance is raised instead of returned.
    """

    def __init__(self, code: Optional[GeneratedCode] = None) -> None:
        self.code = code
        self.generate_calls = 0
        self.generate_tests_results: list[Any] = []
        self.fix_compilation_results: list[Any] = []
        self.fix_security_results: list[Any] = []
        self.fix_tests_results: list[Any] = []
        self.fix_compilation_calls: list[list[str]] = []
        self.fix_security_calls: list[list[SecurityWarning]] = []
        self.fix_tests_calls: list[str] = []

    @staticmethod
    def _next(results: list[Any], default: Any) -> Any:
        item = results.pop(0) if results else default
        if isinstance(item, BaseException):
            raise item
        return item

    async def generate(self, prompt, plan, answers=None) -> GeneratedCode:
        self.generate_calls += 1
        if self.code is None:
            raise NoParseableArtifacts()
        return self.code

    async def generate_tests(self, contracts):
        return self._next(self.generate_tests_results, [])

    async def fix_compilation(self, contracts, errors):
        self.fix_compilation_calls.append(list(errors))
        return self._next(self.fix_compilation_results, contracts)

    async def fix_security(self, contracts, warnings):
        self.fix_security_calls.append(list(warnings))
        return self._next(self.fix_security_results, contracts)

    async def fix_tests(self, contracts, tests, output):
        self.fix_tests_calls.append(output)
        return self._next(self.fix_tests_results, (contracts, tests))


class FakeCompiler:
    """Compiler that fails while any contract contains a marker string."""

    def __init__(self, broken_marker: str = "BROKEN") -> None:
        self.broken_marker = broken_marker
        self.calls = 0

    async def compile(self, contracts: list[Contract]) -> CompileResult:
        self.calls += 1
        broken = [c.name for c in contracts if self.broken_marker in c.content]
        if broken:
            return CompileResult(
                success=False,
                errors=[f"{name}.sol:1:1: ParserError: Expected ';'" for name in broken],
            )
        return CompileResult(
            success=True,
            contract_name=contracts[0].name,
            abi=[{"type": "function", "name": "increment"}],
            bytecode="0x" + "60" * 100,
            deployed_bytecode="0x" + "60" * 80,
        )


class FakeTestRunner:
    """Test runner that fails every test file containing a marker string."""

    __test__ = False

    def __init__(self, failing_marker: str = "FAILING") -> None:
        self.failing_marker = failing_marker
        self.calls = 0

    async def run(self, contracts, tests) -> TestRunResult:
        self.calls += 1
        failing = [t.name for t in tests if self.failing_marker in t.content]
        if failing:
            return TestRunResult(
                failed=[TestFailure(name="test_Increment", reason="assertion failed")],
                raw_output="[FAIL. Reason: assertion failed] test_Increment()",
            )
        return TestRunResult(passed=["test_Increment"], raw_output="[PASS] test_Increment()")


class FakeDeployer:
    def __init__(self, address: str = "0x5FbDB2315678afecb367f032d93F642f64180aa3") -> None:
        self.address = address
        self.calls: list[tuple[Path, str, str, Optional[str]]] = []

    async def deploy_to_chain(self, project_path, rpc_url, private_key, contract_name=None):
        self.calls.append((Path(project_path), rpc_url, private_key, contract_name))
        return LocalDeployResult(contract_address=self.address, tx_hash="0x" + "ab" * 32)


@pytest.fixture
def fake_generator(counter_code: GeneratedCode) -> FakeGenerator:
    return FakeGenerator(counter_code)


@pytest.fixture
def fake_compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def fake_test_runner() -> FakeTestRunner:
    return FakeTestRunner()


@pytest.fixture
def fake_deployer() -> FakeDeployer:
    return FakeDeployer()


@pytest.fixture
def services(
    config: Config,
    fake_generator: FakeGenerator,
    fake_compiler: FakeCompiler,
    fake_test_runner: FakeTestRunner,
    fake_deployer: FakeDeployer,
) -> Services:
    """Services bundle wired with the fakes, a real scanner and a real assembler."""
    return Services(
        generator=fake_generator,
        compiler=fake_compiler,
        scanner=SecurityScanner(),
        test_runner=fake_test_runner,
        assembler=ProjectAssembler(config.projects_dir),
        deployer=fake_deployer,
    )


# ---------------------------------------------------------------------------
# Subprocess helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: Optional[int] = 0,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.returncode = returncode
        mock_proc.pid = 99999
        mock_proc.stdout = None
        mock_proc.stderr = None
        mock_proc.kill = MagicMock()
        mock_proc.terminate = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory
