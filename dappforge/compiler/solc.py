"""Solidity compilation through ``solc --standard-json``."""

from __future__ import annotations

import json
from typing import Any

from ..config import CompilerConfig
from ..errors import ExternalServiceError
from ..models import CompileResult, Contract
from ..utils import console, run_command
from .imports import ImportResolver


def build_standard_input(sources: dict[str, str], optimizer_runs: int = 200) -> dict[str, Any]:
    """Return a solc standard-JSON input document for *sources*."""
    return {
        "language": "Solidity",
        "sources": {name: {"content": content} for name, content in sources.items()},
        "settings": {
            "outputSelection": {
                "*": {"*": ["abi", "evm.bytecode", "evm.deployedBytecode"]},
            },
            "optimizer": {"enabled": True, "runs": optimizer_runs},
        },
    }


def parse_standard_output(output: dict[str, Any], contracts: list[Contract]) -> CompileResult:
    """Split diagnostics by severity and pick the first user contract's artifacts."""
    errors: list[str] = []
    warnings: list[str] = []
    for diagnostic in output.get("errors", []):
        message = diagnostic.get("formattedMessage") or diagnostic.get("message", "")
        if diagnostic.get("severity") == "error":
            errors.append(message)
        else:
            warnings.append(message)

    if errors:
        return CompileResult(success=False, errors=errors, warnings=warnings)

    compiled = output.get("contracts", {})
    for contract in contracts:
        file_output = compiled.get(f"{contract.name}.sol") or {}
        name = contract.name if contract.name in file_output else next(
            (n for n, c in file_output.items() if c.get("evm", {}).get("bytecode", {}).get("object")),
            None,
        )
        if name is None:
            continue
        candidate = file_output[name]
        evm = candidate.get("evm", {})
        return CompileResult(
            success=True,
            warnings=warnings,
            contract_name=name,
            abi=candidate.get("abi"),
            bytecode=evm.get("bytecode", {}).get("object"),
            deployed_bytecode=evm.get("deployedBytecode", {}).get("object"),
        )

    return CompileResult(success=True, warnings=warnings)


class SolcCompiler:
    """Compiles a contract set, fetching OpenZeppelin imports first."""

    def __init__(
        self,
        config: CompilerConfig | None = None,
        resolver: ImportResolver | None = None,
    ) -> None:
        self.config = config or CompilerConfig()
        self.resolver = resolver or ImportResolver(self.config)

    async def compile(self, contracts: list[Contract]) -> CompileResult:
        """Compile *contracts*.

        Unresolvable imports and compiler diagnostics come back as a failed
        :class:`CompileResult`.

        Raises:
            ExternalServiceError: If ``solc`` is missing, times out, or
                returns output that is not JSON.
        """
        if not contracts:
            return CompileResult(success=False, errors=["No contracts to compile"])

        sources = {f"{c.name}.sol": c.content for c in contracts}
        resolved, unresolved = await self.resolver.resolve(sources)
        if unresolved:
            return CompileResult(
                success=False,
                errors=[f"Source not found: {path}" for path in unresolved],
            )

        console.print(
            f"[cyan]Compiling[/cyan] {len(contracts)} contract(s) "
            f"({len(resolved) - len(sources)} library file(s))..."
        )
        standard_input = build_standard_input(resolved, self.config.optimizer_runs)
        try:
            rc, stdout, stderr = await run_command(
                [self.config.solc_binary, "--standard-json"],
                timeout=self.config.timeout,
                input_data=json.dumps(standard_input),
            )
        except FileNotFoundError as exc:
            raise ExternalServiceError("solc", f"binary not found: {exc}") from exc

        if rc == -1:
            raise ExternalServiceError("solc", stderr or "compiler timed out", reason="TIMEOUT")
        try:
            output = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ExternalServiceError(
                "solc", f"unreadable compiler output (exit {rc})", reason=stderr[-2000:]
            ) from exc

        return parse_standard_output(output, contracts)
