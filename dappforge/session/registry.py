"""Session creation, routing and teardown.

A :class:`SessionRegistry` is owned by the application (the HTTP server or
the CLI). Every session gets its own :class:`ProjectStore` and
:class:`ProcessManager`; the only object shared between sessions is the
port allocator.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from typing import Any, Optional

from ..chain.ports import PortAllocator
from ..chain.process_manager import ProcessManager
from ..config import ChainConfig
from ..errors import ValidationError
from ..utils import console, print_warning
from .store import ProjectStore

NO_SESSION_MESSAGE = "Bad Request: No valid session ID provided"


class SessionContext:
    """Everything one client session owns."""

    def __init__(
        self,
        session_id: str,
        process_manager: ProcessManager,
        project_store: ProjectStore | None = None,
    ) -> None:
        self.session_id = session_id
        self.process_manager = process_manager
        self.project_store = project_store or ProjectStore()
        self._closing = False
        self._build_locks: dict[str, asyncio.Lock] = {}

    def __repr__(self) -> str:
        return f"SessionContext(session_id={self.session_id!r}, closing={self._closing})"

    @property
    def closing(self) -> bool:
        return self._closing

    def mark_closing(self) -> None:
        self._closing = True

    def build_lock(self, project_id: str) -> asyncio.Lock:
        """Lock serialising builds of one project within this session."""
        lock = self._build_locks.get(project_id)
        if lock is None:
            lock = self._build_locks[project_id] = asyncio.Lock()
        return lock

    def scoped_id(self, project_id: str) -> str:
        """Project id made unique across sessions (used for on-disk paths)."""
        return f"{self.session_id}-{project_id}"


class SessionRegistry:
    """Creates, looks up and tears down :class:`SessionContext` objects.

    Args:
        chain_config: Settings handed to each session's process manager.
        port_allocator: Host-wide allocator shared by every session. Created
            from *chain_config* when omitted.
    """

    def __init__(
        self,
        chain_config: ChainConfig | None = None,
        port_allocator: PortAllocator | None = None,
    ) -> None:
        self.chain_config = chain_config or ChainConfig()
        self.port_allocator = port_allocator or PortAllocator.from_config(self.chain_config)
        self._sessions: dict[str, SessionContext] = {}

    @property
    def count(self) -> int:
        return len(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[SessionContext]:
        return self._sessions.get(session_id)

    def create(self) -> SessionContext:
        session_id = str(uuid.uuid4())
        ctx = SessionContext(
            session_id,
            ProcessManager(self.chain_config, self.port_allocator),
        )
        self._sessions[session_id] = ctx
        console.print(f"[cyan]Session created[/cyan] {session_id}")
        return ctx

    def resolve(
        self,
        session_id: str | None,
        init_payload: Mapping[str, Any] | None = None,
    ) -> SessionContext:
        """Route a request to its session, creating one for initialisation.

        Args:
            session_id: Id presented by the client, or ``None``/empty.
            init_payload: The initialisation request body, if the request is
                one.

        Raises:
            ValidationError: For an unknown id (with or without an
                initialisation payload) or a request carrying neither.
        """
        if session_id:
            ctx = self._sessions.get(session_id)
            if ctx is None or ctx.closing:
                raise ValidationError(NO_SESSION_MESSAGE)
            return ctx
        if init_payload is not None:
            return self.create()
        raise ValidationError(NO_SESSION_MESSAGE)

    async def close(self, session_id: str) -> bool:
        """Tear a session down before returning.

        Marks it closing, stops all of its chain nodes, clears its project
        store and forgets it. Returns ``False`` if the id is unknown.
        """
        ctx = self._sessions.get(session_id)
        if ctx is None:
            return False

        ctx.mark_closing()
        ctx.process_manager.close()
        try:
            await ctx.process_manager.stop_all()
        finally:
            ctx.project_store.clear()
            self._sessions.pop(session_id, None)
        console.print(f"[yellow]Session closed[/yellow] {session_id}")
        return True

    async def close_all(self) -> None:
        session_ids = list(self._sessions)
        results = await asyncio.gather(
            *(self.close(sid) for sid in session_ids), return_exceptions=True
        )
        for sid, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                print_warning(f"Failed to close session {sid}: {result}")
