"""DappForge -- AI code generation.

Key classes:
    OllamaClient   - Code-model completion with fallback (``complete``)
    CodeGenerator  - Generate / fix contracts, tests and pages
"""

from .generator import CodeGenerator
from .ollama_client import Completion, OllamaClient
from .parsers import parse_contracts, parse_generated_code, parse_pages, parse_tests

__all__ = [
    "CodeGenerator",
    "Completion",
    "OllamaClient",
    "parse_contracts",
    "parse_generated_code",
    "parse_pages",
    "parse_tests",
]
