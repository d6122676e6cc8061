"""DappForge -- local chain-node management.

Key classes:
    PortAllocator   - Host-wide registry of node ports
    ProcessManager  - Per-session anvil lifecycle (start, health check, stop)
    LocalDeployer   - ``forge script`` deployment onto a running node
"""

from .deployer import LocalDeployer, parse_deploy_output, render_deploy_script
from .ports import PortAllocator
from .process_manager import DEFAULT_ACCOUNTS, ProcessHandle, ProcessManager

__all__ = [
    "PortAllocator",
    "ProcessManager",
    "ProcessHandle",
    "DEFAULT_ACCOUNTS",
    "LocalDeployer",
    "parse_deploy_output",
    "render_deploy_script",
]
