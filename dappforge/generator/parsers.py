"""Strict parsing of generator responses.

Only marker-delimited fenced blocks are accepted::

    ---CONTRACT: Counter.sol---
    ```solidity
    ...
    ```

A response that yields no contract markers raises
:class:`~dappforge.errors.NoParseableArtifacts`; there is no guessing from
bare code blocks.
"""

from __future__ import annotations

import posixpath
import re

from ..errors import NoParseableArtifacts
from ..models import Contract, GeneratedCode, Page, TestFile
from ..tester.forge_runner import foundry_test_name, is_hardhat_test

_BLOCK_TEMPLATE = r"---{kind}:\s*([^\n]+?)\s*---[ \t]*\n\s*```[\w.+-]*[ \t]*\n(.*?)```"

_CONTRACT_RE = re.compile(_BLOCK_TEMPLATE.format(kind="CONTRACT"), re.IGNORECASE | re.DOTALL)
_TEST_RE = re.compile(_BLOCK_TEMPLATE.format(kind="TEST"), re.IGNORECASE | re.DOTALL)
_PAGE_RE = re.compile(_BLOCK_TEMPLATE.format(kind="PAGE"), re.IGNORECASE | re.DOTALL)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _contract_name(raw: str) -> str | None:
    name = posixpath.basename(raw.strip())
    if name.endswith(".sol"):
        name = name[: -len(".sol")]
    return name if _IDENTIFIER_RE.match(name) else None


def _page_path(raw: str) -> str | None:
    path = posixpath.normpath(raw.strip().lstrip("/"))
    if path.startswith("..") or path == ".":
        return None
    return path


def parse_contracts(text: str) -> list[Contract]:
    contracts: dict[str, Contract] = {}
    for raw_name, body in _CONTRACT_RE.findall(text):
        name = _contract_name(raw_name)
        if name is None:
            continue
        contracts[name] = Contract(name=name, content=body.strip() + "\n")
    return list(contracts.values())


def parse_tests(text: str) -> list[TestFile]:
    """Parse ``---TEST:`` blocks, dropping Hardhat/JavaScript tests."""
    tests: dict[str, TestFile] = {}
    for raw_name, body in _TEST_RE.findall(text):
        if is_hardhat_test(body):
            continue
        name = foundry_test_name(posixpath.basename(raw_name.strip()))
        tests[name] = TestFile(name=name, content=body.strip() + "\n")
    return list(tests.values())


def parse_pages(text: str) -> list[Page]:
    pages: dict[str, Page] = {}
    for raw_path, body in _PAGE_RE.findall(text):
        path = _page_path(raw_path)
        if path is None:
            continue
        pages[path] = Page(path=path, content=body.strip() + "\n")
    return list(pages.values())


def parse_generated_code(text: str) -> GeneratedCode:
    """Parse a full generation response.

    Raises:
        NoParseableArtifacts: If no contract block is present.
    """
    contracts = parse_contracts(text)
    if not contracts:
        raise NoParseableArtifacts()
    return GeneratedCode(contracts=contracts, tests=parse_tests(text), pages=parse_pages(text))
