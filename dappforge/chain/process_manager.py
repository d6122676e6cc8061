"""Lifecycle management for ephemeral local chain nodes (anvil).

Each session owns one :class:`ProcessManager`. Handles are keyed by project
id; starting twice returns the live handle, stopping terminates the process
and releases its port back to the shared :class:`PortAllocator`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..config import ChainConfig
from ..errors import ProcessError
from ..models import DevAccount
from ..utils import console, print_warning, wait_for_rpc
from .ports import PortAllocator

DEFAULT_ACCOUNTS: tuple[DevAccount, ...] = (
    DevAccount(
        address="0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
        private_key="0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
    ),
    DevAccount(
        address="0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
        private_key="0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d",
    ),
    DevAccount(
        address="0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
        private_key="0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a",
    ),
    DevAccount(
        address="0x90F79bf6EB2c4f870365E785982E1f101E93b906",
        private_key="0x7c852118294e51e653712a81e05800f419141751be58f605c371e15141b007a6",
    ),
    DevAccount(
        address="0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65",
        private_key="0x47e179ec197488593b187f80a00eb0da91f1b9d0b13f8733639f19c30a34926a",
    ),
)


@dataclass
class ProcessHandle:
    """A running chain node owned by one project of one session."""

    project_id: str
    port: int
    rpc_url: str
    process: asyncio.subprocess.Process
    accounts: list[DevAccount] = field(default_factory=lambda: list(DEFAULT_ACCOUNTS))
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    drain: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    def summary(self) -> dict[str, object]:
        return {
            "project_id": self.project_id,
            "port": self.port,
            "rpc_url": self.rpc_url,
            "pid": self.process.pid,
            "accounts": [a.model_dump() for a in self.accounts],
            "started_at": self.started_at,
        }


class ProcessManager:
    """Starts, health-checks and tears down anvil nodes for one session.

    Start and stop for the same project id are serialised through a per-id
    lock; different ids proceed concurrently.

    Args:
        config: Chain settings (binary, host, timeouts).
        port_allocator: Shared allocator. A private one is created from
            *config* when omitted.
    """

    def __init__(
        self,
        config: ChainConfig | None = None,
        port_allocator: PortAllocator | None = None,
    ) -> None:
        self.config = config or ChainConfig()
        self.port_allocator = port_allocator or PortAllocator.from_config(self.config)
        self._handles: dict[str, ProcessHandle] = {}
        self._starting: dict[str, asyncio.subprocess.Process] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, project_id: str) -> Optional[ProcessHandle]:
        return self._handles.get(project_id)

    def handles(self) -> list[ProcessHandle]:
        return list(self._handles.values())

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        project_id: str,
        port: int | None = None,
        fork_url: str | None = None,
    ) -> ProcessHandle:
        """Start a node for *project_id*, or return its live handle.

        Raises:
            ProcessError: If the manager is closed, the binary cannot be
                spawned, or the node does not answer RPC within the
                start-up timeout.
            ResourceConflict: If *port* is already allocated or in use.
        """
        if self._closed:
            raise ProcessError("Process manager is closed", project_id=project_id)

        async with self._lock_for(project_id):
            if self._closed:
                raise ProcessError("Process manager is closed", project_id=project_id)

            existing = self._handles.get(project_id)
            if existing is not None:
                if existing.alive:
                    return existing
                # Node exited on its own; forget it and start fresh.
                self._handles.pop(project_id, None)
                self.port_allocator.release(existing.port)

            allocated = await self.port_allocator.allocate(port)
            rpc_url = f"http://{self.config.host}:{allocated}"
            cmd = [
                self.config.anvil_binary,
                "--port", str(allocated),
                "--host", self.config.host,
            ]
            if fork_url:
                cmd += ["--fork-url", fork_url]

            console.print(
                f"[cyan]Starting chain node[/cyan] [bold]{project_id}[/bold] on port {allocated}..."
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                self.port_allocator.release(allocated)
                raise ProcessError(
                    f"Failed to start {self.config.anvil_binary}: {exc}", project_id=project_id
                ) from exc

            self._starting[project_id] = process
            try:
                ready = not self._closed and await wait_for_rpc(
                    rpc_url,
                    timeout=self.config.startup_timeout,
                    interval=self.config.poll_interval,
                    process=process,
                )
            finally:
                self._starting.pop(project_id, None)
            if not ready or self._closed:
                output = await self._kill(process)
                self.port_allocator.release(allocated)
                if self._closed:
                    raise ProcessError("Process manager closed during start", project_id=project_id)
                raise ProcessError(
                    f"Chain node failed to start within {self.config.startup_timeout}s",
                    project_id=project_id,
                    output=output,
                )

            handle = ProcessHandle(
                project_id=project_id,
                port=allocated,
                rpc_url=rpc_url,
                process=process,
                drain=asyncio.create_task(self._drain(process.stderr)),
            )
            self._handles[project_id] = handle
            console.print(f"[green]Chain node ready[/green] {project_id} -> {rpc_url}")
            return handle

    async def stop(self, project_id: str) -> None:
        """Terminate the node for *project_id*. No-op when none is tracked."""
        async with self._lock_for(project_id):
            handle = self._handles.pop(project_id, None)
            if handle is None:
                return
            try:
                await self._terminate(handle.process)
            finally:
                self.port_allocator.release(handle.port)
                if handle.drain is not None:
                    handle.drain.cancel()
            console.print(f"[yellow]Chain node stopped[/yellow] {project_id} (port {handle.port})")

    async def stop_all(self) -> None:
        """Stop every node, including ones still waiting for readiness.

        Individual failures are logged, not raised. On return no process
        spawned by this manager is running and every start has unwound.
        """
        starting = list(self._starting.items())
        for pid, process in starting:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        for pid, process in starting:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout + 2.0)
            except asyncio.TimeoutError:
                print_warning(f"Chain node {pid} did not exit after kill")

        project_ids = list(self._handles)
        results = await asyncio.gather(
            *(self.stop(pid) for pid in project_ids), return_exceptions=True
        )
        for pid, result in zip(project_ids, results):
            if isinstance(result, BaseException):
                print_warning(f"Failed to stop chain node {pid}: {result}")

        for pid, handle in list(self._handles.items()):
            self._handles.pop(pid, None)
            self.port_allocator.release(handle.port)
            if handle.alive:
                handle.process.kill()
            if handle.drain is not None:
                handle.drain.cancel()

        # In-flight starts release their port on the way out.
        for lock in list(self._locks.values()):
            async with lock:
                pass

    def close(self) -> None:
        """Refuse further starts so none can race a teardown."""
        self._closed = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()

    @staticmethod
    async def _drain(stream: Optional[asyncio.StreamReader]) -> None:
        """Discard a ready node's stderr so the pipe never fills."""
        if stream is None:
            return
        while await stream.read(65536):
            pass

    async def _kill(self, process: asyncio.subprocess.Process) -> str:
        """Kill a node that never became ready and return its stderr."""
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        output = ""
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=2.0)
            output = (stderr or b"").decode("utf-8", errors="replace").strip()
        except asyncio.TimeoutError:
            pass
        return output
