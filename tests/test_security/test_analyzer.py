"""Unit tests for the pattern scanner (dappforge.security.analyzer).

Tests cover:
- Each rule firing on a minimal offending contract
- Guards that suppress findings (ReentrancyGuard, SafeMath, onlyOwner)
- Only outdated-pragma findings block
- Gas estimate arithmetic and contract size limit
"""

from __future__ import annotations

import pytest

from dappforge.models import Contract, Severity
from dappforge.security import RULES, SecurityScanner, blocking


def scan(source: str, name: str = "Sample"):
    return SecurityScanner().analyze_patterns([Contract(name=name, content=source)])


def rules_of(findings) -> set[str]:
    return {f.rule for f in findings}


class TestPatternRules:
    @pytest.mark.unit
    def test_clean_contract_has_no_findings(self):
        source = (
            "pragma solidity ^0.8.20;\n"
            "contract Counter {\n"
            "    uint256 public count;\n"
            "    function increment() external { count += 1; }\n"
            "}\n"
        )
        assert scan(source) == []

    @pytest.mark.unit
    def test_reentrancy_and_line_number(self):
        source = (
            "pragma solidity ^0.8.20;\n"
            "contract Bank {\n"
            "    function pay(address to) external {\n"
            '        (bool success, ) = to.call{value: 1}("");\n'
            "        require(success);\n"
            "    }\n"
            "}\n"
        )
        findings = scan(source, name="Bank")
        reentrancy = [f for f in findings if f.rule == "reentrancy"]
        assert len(reentrancy) == 1
        assert reentrancy[0].line == 4
        assert reentrancy[0].contract == "Bank"
        assert reentrancy[0].severity == Severity.WARNING

    @pytest.mark.unit
    def test_reentrancy_guard_suppresses(self):
        source = (
            'import "@openzeppelin/contracts/utils/ReentrancyGuard.sol";\n'
            "contract Bank is ReentrancyGuard {\n"
            '    function pay(address to) external nonReentrant { (bool success, ) = to.call{value: 1}(""); require(success); }\n'
            "}\n"
        )
        assert "reentrancy" not in rules_of(scan(source))

    @pytest.mark.unit
    def test_tx_origin_transfer_selfdestruct(self):
        source = (
            "pragma solidity ^0.8.20;\n"
            "contract Risky {\n"
            "    function a() external { require(tx.origin == msg.sender); }\n"
            "    function b(address payable to) external { to.transfer(1); }\n"
            "    function c(address payable to) external { selfdestruct(to); }\n"
            "}\n"
        )
        assert {"tx-origin", "transfer-send", "selfdestruct"} <= rules_of(scan(source))

    @pytest.mark.unit
    def test_unguarded_withdraw(self):
        source = "pragma solidity ^0.8.20;\ncontract V { function withdraw() external {} }\n"
        assert "unguarded-withdraw" in rules_of(scan(source))

        guarded = (
            "pragma solidity ^0.8.20;\n"
            "contract V is Ownable { function withdraw() external onlyOwner {} }\n"
        )
        assert "unguarded-withdraw" not in rules_of(scan(guarded))

    @pytest.mark.unit
    def test_outdated_pragma_is_blocking(self):
        findings = scan("pragma solidity ^0.6.12;\ncontract Old {}\n")
        assert rules_of(findings) == {"outdated-pragma"}
        assert blocking(findings) == findings
        assert findings[0].severity == Severity.ERROR

    @pytest.mark.unit
    def test_outdated_pragma_with_safemath_allowed(self):
        source = "pragma solidity ^0.6.12;\nimport './SafeMath.sol';\ncontract Old { using SafeMath for uint256; }\n"
        assert "outdated-pragma" not in rules_of(scan(source))

    @pytest.mark.unit
    def test_only_pragma_rule_is_error(self):
        errors = [rule.name for rule in RULES if rule.severity == Severity.ERROR]
        assert errors == ["outdated-pragma"]

    @pytest.mark.unit
    def test_warnings_do_not_block(self):
        findings = scan("pragma solidity ^0.8.20;\ncontract T { function f() external { require(tx.origin != address(0)); } }\n")
        assert findings
        assert blocking(findings) == []


class TestEstimates:
    @pytest.mark.unit
    def test_gas_estimate(self):
        estimate = SecurityScanner().estimate_gas("0x" + "60" * 100)
        assert estimate.deployment_gas == 21_000 + 100 * 200 + 100_000
        assert estimate.cost_eth == pytest.approx(0.00423)
        assert estimate.cost_usd == pytest.approx(8.46)

    @pytest.mark.unit
    def test_custom_prices(self):
        estimate = SecurityScanner(gas_price_gwei=10.0, eth_price_usd=1_000.0).estimate_gas("")
        assert estimate.deployment_gas == 121_000
        assert estimate.cost_eth == pytest.approx(0.00121)
        assert estimate.cost_usd == pytest.approx(1.21)

    @pytest.mark.unit
    def test_size_check(self):
        scanner = SecurityScanner()
        small = scanner.check_size("60" * 1000)
        assert small.size_bytes == 1000
        assert small.within_limit is True

        at_limit = scanner.check_size("0x" + "00" * 24_576)
        assert at_limit.within_limit is False
        assert at_limit.percentage == 100.0
