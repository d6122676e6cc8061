"""Unit tests for FixLoop (dappforge.fix_loop).

Tests cover:
- Already-verified input consumes no iterations
- Verification after N fixes reports N iterations
- Budget exhaustion keeps the last artifacts and diagnostics
- Unusable or erroring fixes keep the previous artifacts and still count
- on_iteration callback ordering
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from dappforge.errors import ExternalServiceError
from dappforge.fix_loop import FixLoop
from dappforge.models import GeneratedCode, StageOutcome, StageResult


def verify_until(good: str):
    async def verify(artifacts):
        if artifacts == good:
            return StageResult.verified("compile", artifacts)
        return StageResult.retryable("compile", [f"bad: {artifacts}"], artifacts)

    return verify


class TestFixLoop:
    @pytest.mark.unit
    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            FixLoop(0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initial_verified(self):
        fix = AsyncMock()
        result = await FixLoop(3).run(
            "compile", "v0", StageResult.verified("compile"), verify_until("v0"), fix
        )
        assert result.is_verified
        assert result.iterations == 0
        assert result.artifacts == "v0"
        fix.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fixed_on_second_attempt(self):
        fix = AsyncMock(side_effect=["v1", "v2"])
        initial = StageResult.retryable("compile", ["bad: v0"])

        result = await FixLoop(3).run("compile", "v0", initial, verify_until("v2"), fix)

        assert result.is_verified
        assert result.iterations == 2
        assert result.artifacts == "v2"
        assert fix.await_args_list[0].args == ("v0", ["bad: v0"])
        assert fix.await_args_list[1].args == ("v1", ["bad: v1"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted(self):
        fix = AsyncMock(side_effect=["v1", "v2", "v3"])
        result = await FixLoop(3).run(
            "compile", "v0", StageResult.retryable("compile", ["bad: v0"]), verify_until("never"), fix
        )
        assert result.outcome == StageOutcome.FAILED_EXHAUSTED
        assert result.is_exhausted
        assert result.iterations == 3
        assert result.artifacts == "v3"
        assert result.errors == ["bad: v3"]
        assert fix.await_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unusable_candidates_keep_previous(self):
        fix = AsyncMock(side_effect=[None, "", GeneratedCode()])
        verify = AsyncMock()
        result = await FixLoop(3).run(
            "compile", "v0", StageResult.retryable("compile", ["bad: v0"]), verify, fix
        )
        assert result.is_exhausted
        assert result.artifacts == "v0"
        assert result.errors == ["bad: v0"]
        verify.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_error_counts_as_attempt(self):
        fix = AsyncMock(side_effect=[ExternalServiceError("ollama", "down"), "v1"])
        result = await FixLoop(2).run(
            "compile", "v0", StageResult.retryable("compile", ["bad: v0"]), verify_until("v1"), fix
        )
        assert result.is_verified
        assert result.iterations == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        fix = AsyncMock(side_effect=RuntimeError("bug"))
        with pytest.raises(RuntimeError):
            await FixLoop(2).run(
                "compile", "v0", StageResult.retryable("compile", ["bad"]), verify_until("v1"), fix
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_on_iteration_called_before_each_fix(self):
        events: list[str] = []

        async def on_iteration(n):
            events.append(f"iter {n}")

        async def fix(artifacts, errors):
            events.append(f"fix {artifacts}")
            return artifacts + "+"

        await FixLoop(2).run(
            "compile",
            "v",
            StageResult.retryable("compile", ["bad"]),
            verify_until("never"),
            fix,
            on_iteration=on_iteration,
        )
        assert events == ["iter 1", "fix v", "iter 2", "fix v+"]
