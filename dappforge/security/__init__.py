"""DappForge -- security pattern analysis, gas and size estimates."""

from .analyzer import RULES, Rule, SecurityScanner, blocking

__all__ = ["RULES", "Rule", "SecurityScanner", "blocking"]
