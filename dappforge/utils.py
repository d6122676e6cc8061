"""Shared utility functions for DappForge.

Provides async command execution, JSON and path helpers, name helpers,
Rich-based console reporting, port probing, and JSON-RPC readiness polling
for local chain nodes.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import socket
import time
from pathlib import Path
from typing import Any

import httpx
from rich.console import Console
from rich.rule import Rule
from rich.table import Table

from .errors import ValidationError

console = Console()

# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


async def run_command(
    cmd: list[str],
    cwd: str | Path | None = None,
    timeout: int = 120,
    env: dict[str, str] | None = None,
    input_data: str | None = None,
) -> tuple[int, str, str]:
    """Run an external tool asynchronously and capture its output.

    Args:
        cmd: Argument list; the first element is the executable.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
        env: Optional extra environment variables merged on top of ``os.environ``.
        input_data: Text written to the child's stdin (e.g. a solc
            standard-JSON document).

    Returns:
        A ``(returncode, stdout, stderr)`` tuple. A timed-out command returns
        ``-1`` with an explanatory stderr.

    Raises:
        FileNotFoundError: If the executable does not exist.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if input_data is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
        env=merged_env,
    )

    payload = input_data.encode("utf-8") if input_data is not None else None
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(payload), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return (-1, "", f"Command timed out after {timeout}s: {' '.join(cmd)}")

    stdout_str = (stdout_bytes or b"").decode("utf-8", errors="replace").strip()
    stderr_str = (stderr_bytes or b"").decode("utf-8", errors="replace").strip()
    return (process.returncode or 0, stdout_str, stderr_str)


# ---------------------------------------------------------------------------
# String / name helpers
# ---------------------------------------------------------------------------


def sanitize_name(name: str) -> str:
    """Convert an arbitrary name to a lowercase slug usable as a repo or
    hosting project name.

    Examples::

        sanitize_name("My Token Sale") -> "my-token-sale"
        sanitize_name("  NFT (ERC721)  ") -> "nft-erc721"
        sanitize_name("snake_case") -> "snake-case"
    """
    result = re.sub(r"[^a-z0-9-]", "-", name.strip().lower())
    result = re.sub(r"-+", "-", result)
    return result.strip("-")


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> dict[str, Any]:
    """Load a JSON object from disk.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValidationError: If the document is not a JSON object.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a JSON object, got {type(data).__name__}")
    return data


def safe_join(root: Path, relative: str | Path) -> Path:
    """Join *relative* under *root*, refusing absolute paths and ``..``."""
    relative = Path(relative)
    if relative.is_absolute() or ".." in relative.parts:
        raise ValidationError(f"Refusing to write outside the project: {relative}")
    return Path(root) / relative


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


STAGE_COLORS: dict[str, str] = {
    "generate": "bright_cyan",
    "compile": "bright_green",
    "security": "bright_red",
    "test": "bright_magenta",
    "assemble": "bright_yellow",
    "deploy": "bright_blue",
}


def print_stage_header(number: int, stage: str) -> None:
    """Print a full-width rule announcing a build stage."""
    color = STAGE_COLORS.get(stage, "white")
    console.print()
    console.print(
        Rule(
            f"[bold {color}] Stage {number}: {stage.upper()} [/bold {color}]",
            style=color,
        )
    )


def print_summary_table(data: dict[str, Any], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
    console.print()


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")


# ---------------------------------------------------------------------------
# Port helpers
# ---------------------------------------------------------------------------


async def check_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether nothing is listening on *host:port*.

    A refused ``connect`` means the port is free; a successful one means some
    other service already owns it.
    """
    loop = asyncio.get_running_loop()

    def _connect() -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        try:
            return sock.connect_ex((host, port)) != 0
        finally:
            sock.close()

    return await loop.run_in_executor(None, _connect)


# ---------------------------------------------------------------------------
# JSON-RPC readiness polling
# ---------------------------------------------------------------------------


async def wait_for_rpc(
    url: str,
    timeout: float = 10.0,
    interval: float = 0.25,
    process: Any = None,
) -> bool:
    """Poll an Ethereum JSON-RPC endpoint until ``eth_chainId`` answers.

    Args:
        url: RPC URL (e.g. ``http://127.0.0.1:23100``).
        timeout: Maximum seconds to wait.
        interval: Seconds between attempts.
        process: Optional ``asyncio.subprocess.Process``; polling stops early
            if it exits.

    Returns:
        ``True`` once a well-formed JSON-RPC result is received, ``False`` on
        timeout or early process exit.
    """
    deadline = time.monotonic() + timeout
    payload = {"jsonrpc": "2.0", "method": "eth_chainId", "params": [], "id": 1}

    async with httpx.AsyncClient(timeout=httpx.Timeout(2.0, connect=1.0)) as client:
        while time.monotonic() < deadline:
            if process is not None and process.returncode is not None:
                return False
            try:
                response = await client.post(url, json=payload)
                if response.status_code == 200 and "result" in response.json():
                    return True
            except (httpx.HTTPError, ValueError):
                pass

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

    return False
