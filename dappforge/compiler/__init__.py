"""DappForge -- Solidity compilation.

Key classes:
    ImportCache     - Fetched library sources, shared across builds
    ImportResolver  - Fixed-point OpenZeppelin import resolution
    SolcCompiler    - ``solc --standard-json`` adapter
"""

from .imports import ImportCache, ImportResolver, find_imports, normalize_import
from .solc import SolcCompiler, build_standard_input, parse_standard_output

__all__ = [
    "ImportCache",
    "ImportResolver",
    "find_imports",
    "normalize_import",
    "SolcCompiler",
    "build_standard_input",
    "parse_standard_output",
]
