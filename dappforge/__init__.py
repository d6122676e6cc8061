"""DappForge -- build orchestration engine for generated smart-contract projects.

Drives generation, compilation, security scanning, testing, assembly and
local deployment of dApp projects while keeping every client session's
processes and project state isolated.
"""

__version__ = "0.1.0"
