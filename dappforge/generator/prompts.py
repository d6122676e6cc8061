"""Prompt templates for contract, test and page generation.

Every template asks for artifacts delimited by marker lines
(``---CONTRACT: Name.sol---``, ``---TEST: Name.t.sol---``,
``---PAGE: app/page.tsx---``) followed by a fenced code block, which is
the only format :mod:`dappforge.generator.parsers` accepts.
"""

from __future__ import annotations

import json
from typing import Optional

from ..models import Contract, ProjectPlan, SecurityWarning, TestFile

OUTPUT_FORMAT = """## OUTPUT FORMAT
Output every file preceded by its marker line, then a fenced code block:

---CONTRACT: ContractName.sol---
```solidity
// full contract source
```

---TEST: ContractName.t.sol---
```solidity
// full Foundry test source
```
"""

PAGE_FORMAT = """---PAGE: app/page.tsx---
```tsx
// full page source
```
"""

SOLIDITY_RULES = """## SOLIDITY REQUIREMENTS
- pragma solidity ^0.8.20
- Import OpenZeppelin v5 paths (e.g. @openzeppelin/contracts/utils/ReentrancyGuard.sol,
  @openzeppelin/contracts/access/Ownable.sol); never the v4 security/ paths
- Checks-effects-interactions; use call{value: x}("") with a checked result, never transfer/send
- Access control on privileged functions
"""

FOUNDRY_RULES = """## TEST REQUIREMENTS (Foundry only)
- Solidity tests in files ending in .t.sol
- import "forge-std/Test.sol"; import "../contracts/ContractName.sol";
- Contracts inherit Test; test functions start with "test"
- Use vm.prank, vm.expectRevert, vm.expectEmit, makeAddr, deal, assertEq
- NEVER use describe(), it(), chai, ethers or any JavaScript/TypeScript
"""

GENERATE_SYSTEM_PROMPT = (
    "You are an expert Solidity developer who writes secure smart contracts, "
    "Foundry tests and Scaffold-ETH 2 pages.\n\n"
    + SOLIDITY_RULES
    + "\n"
    + FOUNDRY_RULES
    + "\n"
    + OUTPUT_FORMAT
    + "\nFor each requested page also output:\n\n"
    + PAGE_FORMAT
)

GENERATE_TESTS_SYSTEM_PROMPT = (
    "You are an expert Solidity developer writing comprehensive Foundry tests.\n\n"
    + FOUNDRY_RULES
    + "\nOutput only ---TEST: Name.t.sol--- blocks.\n"
)

FIX_COMPILATION_SYSTEM_PROMPT = (
    "You fix Solidity compilation errors while preserving the contract's intent. "
    "Fix only the errors, keep contract names, and output ALL contracts.\n\n"
    + SOLIDITY_RULES
    + "\nOutput only ---CONTRACT: Name.sol--- blocks.\n"
)

FIX_SECURITY_SYSTEM_PROMPT = (
    "You are a Solidity security auditor. Fix the listed findings while preserving "
    "functionality, keep contract names, and output ALL contracts.\n\n"
    + SOLIDITY_RULES
    + "\nOutput only ---CONTRACT: Name.sol--- blocks.\n"
)

FIX_TESTS_SYSTEM_PROMPT = (
    "Analyse the Foundry test failures and fix the contract if it has a bug, or the "
    "test if its expectations are wrong. Output every contract and every test, fixed "
    "or not.\n\n"
    + FOUNDRY_RULES
    + "\n"
    + OUTPUT_FORMAT
)


def _render_sources(label: str, files: list[tuple[str, str]]) -> str:
    return "\n\n".join(f"---{label}: {name}---\n```solidity\n{content}\n```" for name, content in files)


def _contract_sources(contracts: list[Contract]) -> str:
    return _render_sources("CONTRACT", [(f"{c.name}.sol", c.content) for c in contracts])


def build_generate_prompt(
    prompt: str,
    plan: ProjectPlan,
    answers: Optional[dict[str, str]] = None,
) -> str:
    sections = [
        f"## REQUEST\n{prompt}",
        f"## PLAN\n{json.dumps(plan.model_dump(exclude_none=True), indent=2)}",
    ]
    if answers:
        sections.append(
            "## CLARIFICATIONS\n" + "\n".join(f"- {q}: {a}" for q, a in answers.items())
        )
    sections.append(
        f"Generate the contract {plan.contract_name}, its Foundry tests, and these pages: "
        + (", ".join(p.path for p in plan.pages) or "none")
    )
    return "\n\n".join(sections)


def build_generate_tests_prompt(contracts: list[Contract]) -> str:
    return "Write Foundry tests for these contracts:\n\n" + _contract_sources(contracts)


def build_fix_compilation_prompt(contracts: list[Contract], errors: list[str]) -> str:
    return (
        "## COMPILATION ERRORS\n"
        + "\n".join(f"- {e}" for e in errors)
        + "\n\n## CONTRACTS\n"
        + _contract_sources(contracts)
    )


def build_fix_security_prompt(contracts: list[Contract], warnings: list[SecurityWarning]) -> str:
    return (
        "## SECURITY FINDINGS\n"
        + "\n".join(f"- {w.describe()} (fix: {w.recommendation})" for w in warnings)
        + "\n\n## CONTRACTS\n"
        + _contract_sources(contracts)
    )


def build_fix_tests_prompt(contracts: list[Contract], tests: list[TestFile], output: str) -> str:
    return (
        "## TEST OUTPUT\n```\n"
        + output[-6000:]
        + "\n```\n\n## CONTRACTS\n"
        + _contract_sources(contracts)
        + "\n\n## TESTS\n"
        + _render_sources("TEST", [(t.name, t.content) for t in tests])
    )
