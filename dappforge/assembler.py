"""Materialise an artifact set as a Scaffold-ETH style project on disk.

Layout under ``<projects_dir>/<scoped_project_id>/``::

    packages/foundry/contracts/<Name>.sol
    packages/foundry/test/<Name>.t.sol
    packages/nextjs/<page path>
    packages/nextjs/contracts/deployedContracts.ts   (only once deployed)

Assembly writes exactly the artifact files and nothing else, so listing a
freshly assembled project returns the artifact set unchanged.
"""

from __future__ import annotations

import json
import re
import shutil
from pathlib import Path
from typing import Optional

from .errors import ValidationError
from .models import DeploymentInfo, GeneratedCode, ProjectFile
from .tester.forge_runner import foundry_test_name
from .utils import console, safe_join

FOUNDRY_DIR = Path("packages") / "foundry"
NEXTJS_DIR = Path("packages") / "nextjs"
DEPLOYED_CONTRACTS_FILE = NEXTJS_DIR / "contracts" / "deployedContracts.ts"

SKIP_ANYWHERE = frozenset({".git", "node_modules"})
SKIP_PREFIXES = tuple(
    path.parts
    for path in (
        FOUNDRY_DIR / "out",
        FOUNDRY_DIR / "cache",
        FOUNDRY_DIR / "broadcast",
        FOUNDRY_DIR / "lib",
        NEXTJS_DIR / ".next",
    )
)

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


def render_deployed_contracts(deployment: DeploymentInfo) -> str:
    """Return the ``deployedContracts.ts`` module for one deployment."""
    entry = {
        str(deployment.chain_id): {
            deployment.contract_name: {
                "address": deployment.contract_address,
                "abi": deployment.abi,
            }
        }
    }
    return (
        "/**\n * This file is autogenerated by DappForge.\n */\n"
        f"const deployedContracts = {json.dumps(entry, indent=2)} as const;\n\n"
        "export default deployedContracts;\n"
    )


def _skipped(relative: Path) -> bool:
    parts = relative.parts
    if any(part in SKIP_ANYWHERE for part in parts):
        return True
    return any(parts[: len(prefix)] == prefix for prefix in SKIP_PREFIXES)


class ProjectAssembler:
    """Writes, lists and removes assembled projects under *projects_dir*."""

    def __init__(self, projects_dir: Path) -> None:
        self.projects_dir = Path(projects_dir)

    # ------------------------------------------------------------------
    # Path helpers
    # ------------------------------------------------------------------

    def project_path(self, scoped_project_id: str) -> Path:
        if not _PROJECT_ID_RE.match(scoped_project_id) or ".." in scoped_project_id:
            raise ValidationError(f"Invalid project id {scoped_project_id!r}")
        return self.projects_dir / scoped_project_id

    def _write(self, root: Path, relative: Path, content: str) -> None:
        target = safe_join(root, relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def assemble(
        self,
        scoped_project_id: str,
        code: GeneratedCode,
        deployment: Optional[DeploymentInfo] = None,
    ) -> Path:
        """Write *code* (and *deployment*, if given) to a fresh project directory.

        Raises:
            ValidationError: For an unsafe project id or file path.
        """
        root = self.project_path(scoped_project_id)
        if root.exists():
            shutil.rmtree(root)
        root.mkdir(parents=True)

        for contract in code.contracts:
            self._write(root, FOUNDRY_DIR / "contracts" / f"{contract.name}.sol", contract.content)
        for test in code.tests:
            self._write(root, FOUNDRY_DIR / "test" / foundry_test_name(test.name), test.content)
        for page in code.pages:
            self._write(root, NEXTJS_DIR / Path(page.path), page.content)
        if deployment is not None:
            self.write_deployment(root, deployment)

        console.print(
            f"[green]Assembled[/green] {scoped_project_id}: "
            f"{len(code.contracts)} contract(s), {len(code.tests)} test(s), {len(code.pages)} page(s)"
        )
        return root

    def write_deployment(self, project_path: Path, deployment: DeploymentInfo) -> Path:
        """Write the deployment record into the front-end package."""
        self._write(Path(project_path), DEPLOYED_CONTRACTS_FILE, render_deployed_contracts(deployment))
        return Path(project_path) / DEPLOYED_CONTRACTS_FILE

    def list_files(self, project_path: Path) -> list[ProjectFile]:
        """Return every project file, sorted by relative path.

        Foundry build output and installed libraries, the Next.js build
        directory, ``node_modules`` and VCS metadata are skipped. Directories
        with those names elsewhere (such as a page under ``lib/``) are kept.
        """
        root = Path(project_path)
        files: list[ProjectFile] = []
        for path in sorted(root.rglob("*")):
            relative = path.relative_to(root)
            if _skipped(relative) or not path.is_file():
                continue
            files.append(
                ProjectFile(
                    relative_path=relative.as_posix(),
                    content=path.read_text(encoding="utf-8", errors="replace"),
                )
            )
        return files

    def cleanup(self, project_path: Path) -> None:
        """Delete an assembled project. Paths outside *projects_dir* are refused."""
        root = Path(project_path).resolve()
        if self.projects_dir.resolve() not in root.parents:
            raise ValidationError(f"Refusing to delete {root}: not under {self.projects_dir}")
        shutil.rmtree(root, ignore_errors=True)
