"""DappForge -- Foundry test execution."""

from .forge_runner import ForgeTestRunner, foundry_test_name, is_hardhat_test, parse_forge_output

__all__ = ["ForgeTestRunner", "foundry_test_name", "is_hardhat_test", "parse_forge_output"]
