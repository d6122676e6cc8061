"""Static pattern analysis of generated Solidity contracts.

Scans contract sources for well-known risky constructs (reentrancy-prone
value transfers, ``tx.origin`` authentication, unguarded withdrawals...)
and provides rough deployment gas and size estimates from bytecode.

Only findings with ``error`` severity block a build; ``warning`` findings
are recorded and reported.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

from ..models import Contract, GasEstimate, SecurityWarning, Severity, SizeCheck
from ..utils import console

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_RE_VALUE_CALL = re.compile(r"\.call\{\s*value\s*:")
_RE_UNCHECKED_CALL = re.compile(r"\.call\([^)]*\)\s*;")
_RE_TRANSFER_SEND = re.compile(r"\.(?:transfer|send)\(")
_RE_TX_ORIGIN = re.compile(r"\btx\.origin\b")
_RE_OLD_PRAGMA = re.compile(r"pragma solidity\s*\^?\s*0\.[0-7]\.")
_RE_SELFDESTRUCT = re.compile(r"\bselfdestruct\s*\(")
_RE_WITHDRAW = re.compile(r"function\s+withdraw\w*\s*\(")


def _first_line(source: str, pattern: re.Pattern[str]) -> Optional[int]:
    for number, line in enumerate(source.splitlines(), start=1):
        if pattern.search(line):
            return number
    return None


@dataclass(frozen=True)
class Rule:
    """A single pattern rule.

    ``applies`` receives the full contract source and decides whether the
    rule fires; ``locate`` (optional) picks the line to report.
    """

    name: str
    severity: Severity
    message: str
    recommendation: str
    applies: Callable[[str], bool]
    locate: Optional[re.Pattern[str]] = None


RULES: tuple[Rule, ...] = (
    Rule(
        name="reentrancy",
        severity=Severity.WARNING,
        message="ETH transfer via call{value:} without a reentrancy guard.",
        recommendation="Inherit OpenZeppelin's ReentrancyGuard and mark the function nonReentrant.",
        applies=lambda s: bool(_RE_VALUE_CALL.search(s))
        and "ReentrancyGuard" not in s
        and "nonReentrant" not in s,
        locate=_RE_VALUE_CALL,
    ),
    Rule(
        name="unchecked-call",
        severity=Severity.WARNING,
        message="Low-level call whose boolean return value is not checked.",
        recommendation="Capture the result and require(success, ...).",
        applies=lambda s: bool(_RE_UNCHECKED_CALL.search(s)) and "require(success" not in s,
        locate=_RE_UNCHECKED_CALL,
    ),
    Rule(
        name="transfer-send",
        severity=Severity.WARNING,
        message="transfer()/send() forward a fixed 2300 gas and can fail for contract recipients.",
        recommendation="Use call{value: amount}(\"\") with a checked return value.",
        applies=lambda s: bool(_RE_TRANSFER_SEND.search(s)),
        locate=_RE_TRANSFER_SEND,
    ),
    Rule(
        name="tx-origin",
        severity=Severity.WARNING,
        message="tx.origin used; authorisation based on it is open to phishing.",
        recommendation="Use msg.sender for authorisation.",
        applies=lambda s: bool(_RE_TX_ORIGIN.search(s)),
        locate=_RE_TX_ORIGIN,
    ),
    Rule(
        name="outdated-pragma",
        severity=Severity.ERROR,
        message="Solidity below 0.8.0 without SafeMath is vulnerable to integer overflow/underflow.",
        recommendation="Target pragma solidity ^0.8.20.",
        applies=lambda s: bool(_RE_OLD_PRAGMA.search(s)) and "SafeMath" not in s,
        locate=_RE_OLD_PRAGMA,
    ),
    Rule(
        name="selfdestruct",
        severity=Severity.WARNING,
        message="selfdestruct is deprecated and can destroy contract state irreversibly.",
        recommendation="Remove selfdestruct; use a pausable or withdraw pattern instead.",
        applies=lambda s: bool(_RE_SELFDESTRUCT.search(s)),
        locate=_RE_SELFDESTRUCT,
    ),
    Rule(
        name="unguarded-withdraw",
        severity=Severity.WARNING,
        message="Withdraw function without an access-control modifier.",
        recommendation="Restrict it with onlyOwner (Ownable) or a role check.",
        applies=lambda s: bool(_RE_WITHDRAW.search(s))
        and "onlyOwner" not in s
        and "Ownable" not in s,
        locate=_RE_WITHDRAW,
    ),
)

# Deployment cost model
BASE_GAS = 21_000
GAS_PER_BYTE = 200
CREATION_OVERHEAD_GAS = 100_000
DEFAULT_GAS_PRICE_GWEI = 30.0
DEFAULT_ETH_PRICE_USD = 2_000.0
MAX_CONTRACT_SIZE = 24_576


def _byte_length(bytecode: str) -> int:
    hex_body = bytecode[2:] if bytecode.startswith("0x") else bytecode
    return len(hex_body) // 2


class SecurityScanner:
    """Pattern-based scanner plus gas and size estimates."""

    def __init__(
        self,
        rules: tuple[Rule, ...] = RULES,
        *,
        gas_price_gwei: float = DEFAULT_GAS_PRICE_GWEI,
        eth_price_usd: float = DEFAULT_ETH_PRICE_USD,
    ) -> None:
        self.rules = rules
        self.gas_price_gwei = gas_price_gwei
        self.eth_price_usd = eth_price_usd

    def analyze_patterns(self, contracts: list[Contract]) -> list[SecurityWarning]:
        """Run every rule against every contract."""
        findings: list[SecurityWarning] = []
        for contract in contracts:
            for rule in self.rules:
                if not rule.applies(contract.content):
                    continue
                findings.append(
                    SecurityWarning(
                        severity=rule.severity,
                        rule=rule.name,
                        message=rule.message,
                        contract=contract.name,
                        line=_first_line(contract.content, rule.locate) if rule.locate else None,
                        recommendation=rule.recommendation,
                    )
                )

        errors = sum(1 for f in findings if f.severity == Severity.ERROR)
        console.print(
            f"[cyan]Security scan:[/cyan] {len(findings)} finding(s), "
            f"[red]{errors} blocking[/red]"
        )
        return findings

    def estimate_gas(self, bytecode: str) -> GasEstimate:
        gas = BASE_GAS + _byte_length(bytecode) * GAS_PER_BYTE + CREATION_OVERHEAD_GAS
        cost_eth = gas * self.gas_price_gwei * 1e9 / 1e18
        return GasEstimate(
            deployment_gas=gas,
            gas_price_gwei=self.gas_price_gwei,
            cost_eth=round(cost_eth, 6),
            cost_usd=round(cost_eth * self.eth_price_usd, 2),
        )

    def check_size(self, bytecode: str) -> SizeCheck:
        return SizeCheck(size_bytes=_byte_length(bytecode or ""), max_bytes=MAX_CONTRACT_SIZE)


def blocking(findings: list[SecurityWarning]) -> list[SecurityWarning]:
    """Return only the findings that block a build."""
    return [f for f in findings if f.severity == Severity.ERROR]
