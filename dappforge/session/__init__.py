"""DappForge -- session isolation.

Key classes:
    ProjectStore     - Per-session project state ledger
    SessionContext   - One client's store, process manager and build locks
    SessionRegistry  - Creates, routes and tears down sessions
"""

from .registry import SessionContext, SessionRegistry
from .store import ProjectStore

__all__ = [
    "ProjectStore",
    "SessionContext",
    "SessionRegistry",
]
