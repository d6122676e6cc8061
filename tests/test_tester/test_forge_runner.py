"""Unit tests for the Foundry test runner (dappforge.tester.forge_runner).

Tests cover:
- parse_forge_output (pass/fail lines, duplicate summary lines)
- Hardhat detection and file naming
- ForgeTestRunner.run (no tests, hardhat rejection, project layout,
  failures, timeouts, missing binary, library install)
- Artifact names never place files outside the temp project
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from dappforge.config import TesterConfig
from dappforge.errors import ExternalServiceError, ValidationError
from dappforge.models import Contract, TestFile
from dappforge.tester.forge_runner import (
    HARDHAT_ERROR,
    ForgeTestRunner,
    foundry_test_name,
    is_hardhat_test,
    parse_forge_output,
)

from conftest import COUNTER_SOURCE, COUNTER_TEST_SOURCE

FORGE_OUTPUT = """Ran 3 tests for test/Counter.t.sol:CounterTest
[PASS] test_Increment() (gas: 28334)
[PASS] test_Initial() (gas: 7562)
[FAIL. Reason: assertion failed] test_Decrement() (gas: 12000)
Suite result: FAILED. 2 passed; 1 failed; 0 skipped

Failing tests:
Encountered 1 failing test in test/Counter.t.sol:CounterTest
[FAIL. Reason: assertion failed] test_Decrement() (gas: 12000)
"""

CONTRACTS = [Contract(name="Counter", content=COUNTER_SOURCE)]
TESTS = [TestFile(name="Counter.t.sol", content=COUNTER_TEST_SOURCE)]


class TestParseForgeOutput:
    @pytest.mark.unit
    def test_pass_and_fail(self):
        passed, failed = parse_forge_output(FORGE_OUTPUT)
        assert passed == ["test_Increment", "test_Initial"]
        assert len(failed) == 1
        assert failed[0].name == "test_Decrement"
        assert failed[0].reason == "assertion failed"

    @pytest.mark.unit
    def test_fail_without_reason(self):
        _, failed = parse_forge_output("[FAIL] test_Boom() (gas: 1)")
        assert failed[0].reason == "Test failed"

    @pytest.mark.unit
    def test_empty_output(self):
        assert parse_forge_output("") == ([], [])


class TestHelpers:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Counter.t.sol", "Counter.t.sol"),
            ("Counter.sol", "Counter.t.sol"),
            ("Counter.test.js", "Counter.test.t.sol"),
            ("CounterTest", "CounterTest.t.sol"),
        ],
    )
    def test_foundry_test_name(self, name, expected):
        assert foundry_test_name(name) == expected

    @pytest.mark.unit
    def test_hardhat_detection(self):
        assert is_hardhat_test('const { expect } = require("chai");\ndescribe("Counter", () => {});')
        assert not is_hardhat_test(COUNTER_TEST_SOURCE)


class TestForgeTestRunner:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_tests(self):
        result = await ForgeTestRunner().run(CONTRACTS, [])
        assert result.success is False
        assert result.error == "No tests to run"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_hardhat_tests_rejected_without_running(self):
        tests = [TestFile(name="Counter.test.js", content='describe("Counter", () => { it("works", async () => {}); });')]
        with patch("dappforge.tester.forge_runner.run_command", new_callable=AsyncMock) as run:
            result = await ForgeTestRunner().run(CONTRACTS, tests)

        run.assert_not_awaited()
        assert result.error == HARDHAT_ERROR

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_writes_project_and_parses(self):
        seen: dict[str, object] = {}

        async def fake_run(cmd, cwd=None, timeout=120, env=None, input_data=None):
            root = Path(cwd)
            seen["cmd"] = cmd
            seen["contract"] = (root / "contracts" / "Counter.sol").read_text()
            seen["test"] = (root / "test" / "Counter.t.sol").exists()
            seen["toml"] = (root / "foundry.toml").read_text()
            return 1, FORGE_OUTPUT, ""

        runner = ForgeTestRunner(TesterConfig(install_libs=False))
        with patch("dappforge.tester.forge_runner.run_command", side_effect=fake_run):
            result = await runner.run(CONTRACTS, TESTS)

        assert seen["cmd"] == ["forge", "test", "-vvv"]
        assert seen["contract"] == COUNTER_SOURCE
        assert seen["test"] is True
        assert 'solc = "0.8.20"' in seen["toml"]
        assert result.success is False
        assert result.error == ""
        assert result.diagnostics() == ["test_Decrement: assertion failed"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_test_names_stay_inside_project(self):
        written: list[str] = []

        async def fake_run(cmd, cwd=None, timeout=120, env=None, input_data=None):
            written.extend(p.name for p in (Path(cwd) / "test").iterdir())
            return 0, "[PASS] test_Increment() (gas: 1)", ""

        # bypasses model validation
        escaping = TestFile.model_construct(name="../../escaped", content=COUNTER_TEST_SOURCE)
        runner = ForgeTestRunner(TesterConfig(install_libs=False))
        with patch("dappforge.tester.forge_runner.run_command", side_effect=fake_run):
            result = await runner.run(CONTRACTS, [escaping])

        assert written == ["escaped.t.sol"]
        assert result.success is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_contract_name_with_path_refused(self):
        escaping = Contract.model_construct(name="../Evil", content="contract Evil {}")
        runner = ForgeTestRunner(TesterConfig(install_libs=False))
        with patch("dappforge.tester.forge_runner.run_command", new_callable=AsyncMock) as run:
            with pytest.raises(ValidationError, match="outside the project"):
                await runner.run([escaping], TESTS)
        run.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_all_passing(self):
        runner = ForgeTestRunner(TesterConfig(install_libs=False))
        with patch(
            "dappforge.tester.forge_runner.run_command",
            new_callable=AsyncMock,
            return_value=(0, "[PASS] test_Increment() (gas: 1)", ""),
        ):
            result = await runner.run(CONTRACTS, TESTS)
        assert result.success is True
        assert result.passed == ["test_Increment"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_build_failure_without_test_lines(self):
        runner = ForgeTestRunner(TesterConfig(install_libs=False))
        with patch(
            "dappforge.tester.forge_runner.run_command",
            new_callable=AsyncMock,
            return_value=(1, "", "Compiler run failed"),
        ):
            result = await runner.run(CONTRACTS, TESTS)
        assert result.error == "forge test exited with code 1"
        assert "Compiler run failed" in result.raw_output

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout(self):
        runner = ForgeTestRunner(TesterConfig(install_libs=False))
        with patch(
            "dappforge.tester.forge_runner.run_command",
            new_callable=AsyncMock,
            return_value=(-1, "", "Command timed out"),
        ):
            result = await runner.run(CONTRACTS, TESTS)
        assert result.error == "Test execution timed out"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_forge(self):
        runner = ForgeTestRunner(TesterConfig(install_libs=False))
        with patch(
            "dappforge.tester.forge_runner.run_command",
            new_callable=AsyncMock,
            side_effect=FileNotFoundError("forge"),
        ):
            with pytest.raises(ExternalServiceError) as exc_info:
                await runner.run(CONTRACTS, TESTS)
        assert exc_info.value.provider == "forge"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_installs_libraries_first(self):
        runner = ForgeTestRunner(TesterConfig(install_libs=True))
        run = AsyncMock(side_effect=[(0, "", ""), (0, "[PASS] test_Increment() (gas: 1)", "")])
        with patch("dappforge.tester.forge_runner.run_command", run):
            result = await runner.run(CONTRACTS, TESTS)

        assert result.success is True
        first = run.await_args_list[0].args[0]
        assert first[:2] == ["forge", "install"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_library_install_failure(self):
        runner = ForgeTestRunner(TesterConfig(install_libs=True))
        with patch(
            "dappforge.tester.forge_runner.run_command",
            new_callable=AsyncMock,
            return_value=(1, "", "network unreachable"),
        ):
            with pytest.raises(ExternalServiceError):
                await runner.run(CONTRACTS, TESTS)
