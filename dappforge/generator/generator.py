"""Ollama-backed code generator.

Implements the generate/fix operations the pipeline needs. Every response
goes through the strict marker parser; a response with nothing usable
raises :class:`~dappforge.errors.NoParseableArtifacts`, an unreachable or
failing model raises :class:`~dappforge.errors.ExternalServiceError`.
"""

from __future__ import annotations

from typing import Optional, TypeVar

from ..config import OllamaConfig
from ..errors import NoParseableArtifacts
from ..models import Contract, GeneratedCode, ProjectPlan, SecurityWarning, TestFile
from ..utils import console, format_duration
from . import prompts
from .ollama_client import OllamaClient
from .parsers import parse_contracts, parse_generated_code, parse_tests

_T = TypeVar("_T", Contract, TestFile)


def _merge(previous: list[_T], fixed: list[_T]) -> list[_T]:
    """Replace files by name, keeping untouched ones and their order."""
    by_name = {item.name: item for item in fixed}
    merged = [by_name.pop(item.name, item) for item in previous]
    return merged + list(by_name.values())


class CodeGenerator:
    """Generates and repairs contracts, tests and pages through Ollama."""

    def __init__(
        self,
        config: OllamaConfig | None = None,
        client: OllamaClient | None = None,
    ) -> None:
        self.config = config or OllamaConfig()
        self.client = client or OllamaClient(self.config)

    async def _ask(self, system: str, prompt: str, purpose: str) -> str:
        console.print(f"[cyan]Asking {self.config.code_model}[/cyan] to {purpose}...")
        completion = await self.client.complete(system, prompt)
        console.print(
            f"  [dim]{completion.model} answered in {format_duration(completion.duration_ms / 1000)}[/dim]"
        )
        return completion.text

    async def generate(
        self,
        prompt: str,
        plan: ProjectPlan,
        answers: Optional[dict[str, str]] = None,
    ) -> GeneratedCode:
        text = await self._ask(
            prompts.GENERATE_SYSTEM_PROMPT,
            prompts.build_generate_prompt(prompt, plan, answers),
            f"generate {plan.contract_name}",
        )
        return parse_generated_code(text)

    async def generate_tests(self, contracts: list[Contract]) -> list[TestFile]:
        text = await self._ask(
            prompts.GENERATE_TESTS_SYSTEM_PROMPT,
            prompts.build_generate_tests_prompt(contracts),
            "write tests",
        )
        tests = parse_tests(text)
        if not tests:
            raise NoParseableArtifacts("response contained no Foundry tests")
        return tests

    async def fix_compilation(self, contracts: list[Contract], errors: list[str]) -> list[Contract]:
        text = await self._ask(
            prompts.FIX_COMPILATION_SYSTEM_PROMPT,
            prompts.build_fix_compilation_prompt(contracts, errors),
            f"fix {len(errors)} compilation error(s)",
        )
        fixed = parse_contracts(text)
        if not fixed:
            raise NoParseableArtifacts("response contained no fixed contracts")
        return _merge(contracts, fixed)

    async def fix_security(
        self, contracts: list[Contract], warnings: list[SecurityWarning]
    ) -> list[Contract]:
        text = await self._ask(
            prompts.FIX_SECURITY_SYSTEM_PROMPT,
            prompts.build_fix_security_prompt(contracts, warnings),
            f"fix {len(warnings)} security finding(s)",
        )
        fixed = parse_contracts(text)
        if not fixed:
            raise NoParseableArtifacts("response contained no fixed contracts")
        return _merge(contracts, fixed)

    async def fix_tests(
        self, contracts: list[Contract], tests: list[TestFile], output: str
    ) -> tuple[list[Contract], list[TestFile]]:
        text = await self._ask(
            prompts.FIX_TESTS_SYSTEM_PROMPT,
            prompts.build_fix_tests_prompt(contracts, tests, output),
            "fix failing tests",
        )
        fixed_contracts = parse_contracts(text)
        fixed_tests = parse_tests(text)
        if not fixed_contracts and not fixed_tests:
            raise NoParseableArtifacts("response contained neither contracts nor tests")
        return _merge(contracts, fixed_contracts), _merge(tests, fixed_tests)
