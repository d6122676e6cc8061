"""Local deployment of an assembled project onto a running chain node.

Runs ``forge script script/Deploy.s.sol --broadcast`` inside the project's
Foundry package and parses the deployed address from its output.
"""

from __future__ import annotations

import re
from pathlib import Path

from ..config import TesterConfig
from ..errors import ExternalServiceError
from ..models import LocalDeployResult
from ..utils import console, run_command

FOUNDRY_SUBDIR = Path("packages") / "foundry"

_FOUNDRY_TOML = """[profile.default]
src = "contracts"
test = "test"
script = "script"
out = "out"
libs = ["lib"]
solc = "{solc_version}"
"""

_REMAPPINGS = """forge-std/=lib/forge-std/src/
@openzeppelin/contracts/=lib/openzeppelin-contracts/contracts/
"""

_DEPLOY_SCRIPT = """// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

import "forge-std/Script.sol";
import "../contracts/{name}.sol";

contract DeployScript is Script {{
    function run() external {{
        uint256 deployerPrivateKey = vm.envUint("DEPLOYER_PRIVATE_KEY");
        vm.startBroadcast(deployerPrivateKey);
        {name} instance = new {name}();
        console.log("{name} deployed at:", address(instance));
        vm.stopBroadcast();
    }}
}}
"""

_ADDRESS_PATTERNS = (
    re.compile(r"deployed at:\s*(0x[a-fA-F0-9]{40})", re.IGNORECASE),
    re.compile(r"Contract Address:\s*(0x[a-fA-F0-9]{40})", re.IGNORECASE),
)
_TX_HASH_PATTERN = re.compile(r"(?:Hash|Transaction hash):\s*(0x[a-fA-F0-9]{64})", re.IGNORECASE)


def render_deploy_script(contract_name: str) -> str:
    """Return a Foundry deploy script for a no-argument constructor."""
    return _DEPLOY_SCRIPT.format(name=contract_name)


def parse_deploy_output(output: str) -> tuple[str | None, str | None]:
    """Extract ``(contract_address, tx_hash)`` from ``forge script`` output."""
    address = None
    for pattern in _ADDRESS_PATTERNS:
        match = pattern.search(output)
        if match:
            address = match.group(1)
            break
    tx_match = _TX_HASH_PATTERN.search(output)
    return address, tx_match.group(1) if tx_match else None


class LocalDeployer:
    """Deploys the main contract of an assembled project via ``forge script``."""

    def __init__(self, config: TesterConfig | None = None, timeout: int = 120) -> None:
        self.config = config or TesterConfig()
        self.timeout = timeout

    async def deploy_to_chain(
        self,
        project_path: Path,
        rpc_url: str,
        private_key: str,
        contract_name: str | None = None,
    ) -> LocalDeployResult:
        """Broadcast the deploy script against *rpc_url*.

        Raises:
            ExternalServiceError: If the project has no contract, ``forge``
                cannot be run, the script fails, or no address is found.
        """
        foundry_dir = Path(project_path) / FOUNDRY_SUBDIR
        name = contract_name or self._main_contract(foundry_dir)
        await self._prepare(foundry_dir, name)

        console.print(f"[cyan]Deploying[/cyan] [bold]{name}[/bold] to {rpc_url}...")
        try:
            rc, stdout, stderr = await run_command(
                [
                    self.config.forge_binary,
                    "script",
                    "script/Deploy.s.sol",
                    "--rpc-url",
                    rpc_url,
                    "--broadcast",
                    "-vvv",
                ],
                cwd=foundry_dir,
                timeout=self.timeout,
                env={"DEPLOYER_PRIVATE_KEY": private_key},
            )
        except FileNotFoundError as exc:
            raise ExternalServiceError("forge", f"binary not found: {exc}") from exc

        output = "\n".join(part for part in (stdout, stderr) if part)
        if rc != 0:
            raise ExternalServiceError("forge", f"deployment script failed (exit {rc})", reason=output[-2000:])

        address, tx_hash = parse_deploy_output(output)
        if address is None:
            raise ExternalServiceError("forge", "no deployed address in script output", reason=output[-2000:])

        console.print(f"[green]Deployed[/green] {name} at {address}")
        return LocalDeployResult(contract_address=address, tx_hash=tx_hash, output=output)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _main_contract(foundry_dir: Path) -> str:
        contracts = sorted((foundry_dir / "contracts").glob("*.sol"))
        if not contracts:
            raise ExternalServiceError("forge", f"no contracts under {foundry_dir / 'contracts'}")
        return contracts[0].stem

    async def _prepare(self, foundry_dir: Path, contract_name: str) -> None:
        """Write the Foundry scaffolding the deploy needs when missing."""
        toml = foundry_dir / "foundry.toml"
        if not toml.exists():
            toml.write_text(_FOUNDRY_TOML.format(solc_version=self.config.solc_version), encoding="utf-8")

        remappings = foundry_dir / "remappings.txt"
        if not remappings.exists():
            remappings.write_text(_REMAPPINGS, encoding="utf-8")

        script = foundry_dir / "script" / "Deploy.s.sol"
        if not script.exists():
            script.parent.mkdir(parents=True, exist_ok=True)
            script.write_text(render_deploy_script(contract_name), encoding="utf-8")

        if self.config.install_libs and not (foundry_dir / "lib" / "forge-std").exists():
            (foundry_dir / "lib").mkdir(parents=True, exist_ok=True)
            try:
                rc, _, stderr = await run_command(
                    [
                        self.config.forge_binary,
                        "install",
                        "foundry-rs/forge-std",
                        "OpenZeppelin/openzeppelin-contracts",
                        "--no-git",
                    ],
                    cwd=foundry_dir,
                    timeout=self.config.timeout,
                )
            except FileNotFoundError as exc:
                raise ExternalServiceError("forge", f"binary not found: {exc}") from exc
            if rc != 0:
                raise ExternalServiceError("forge", "library install failed", reason=stderr)
