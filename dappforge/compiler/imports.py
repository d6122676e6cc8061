"""Import resolution for Solidity sources.

OpenZeppelin imports are fetched from unpkg at a pinned version. Resolution
is an iterative fixed point over an explicit frontier: each round scans the
newly added sources, fetches every missing import concurrently, and waits
for all fetches before scanning the next round.
"""

from __future__ import annotations

import asyncio
import posixpath
import re
from typing import Optional

import httpx

from ..config import CompilerConfig
from ..utils import print_warning

OZ_PREFIX = "@openzeppelin/contracts/"

IMPORT_RE = re.compile(
    r"""import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+(?:\s+as\s+\w+)?)\s+from\s+)?["']([^"']+)["']\s*;"""
)


def find_imports(source: str) -> list[str]:
    """Return the raw import paths of a Solidity source, in order."""
    return IMPORT_RE.findall(source)


def normalize_import(importer: str, raw: str) -> Optional[str]:
    """Turn *raw* (as written in *importer*) into a source unit name.

    Relative imports are resolved against the importer's directory. Returns
    ``None`` when a relative import climbs above the source root.
    """
    if raw.startswith("./") or raw.startswith("../"):
        joined = posixpath.normpath(posixpath.join(posixpath.dirname(importer), raw))
        if joined.startswith(".."):
            return None
        return joined
    return raw


class ImportCache:
    """Fetched library sources keyed by source unit name.

    One cache lives as long as the service bundle that owns it, so repeated
    builds do not refetch the same OpenZeppelin files.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, path: str) -> Optional[str]:
        return self._entries.get(path)

    def put(self, path: str, content: str) -> None:
        self._entries[path] = content


class ImportResolver:
    """Completes a source map with every transitively imported library file.

    Args:
        config: Compiler settings (unpkg URL, OpenZeppelin version).
        cache: Shared :class:`ImportCache`. A private one is used when omitted.
        transport: Optional ``httpx`` transport, used by tests.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        config: CompilerConfig | None = None,
        cache: ImportCache | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.config = config or CompilerConfig()
        self.cache = cache if cache is not None else ImportCache()
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            transport=self._transport,
            follow_redirects=True,
        )

    def url_for(self, path: str) -> str:
        relative = path[len(OZ_PREFIX):]
        base = self.config.unpkg_url.rstrip("/")
        return f"{base}/@openzeppelin/contracts@{self.config.openzeppelin_version}/{relative}"

    async def fetch(self, client: httpx.AsyncClient, path: str) -> Optional[str]:
        """Fetch one OpenZeppelin file, consulting the cache first."""
        cached = self.cache.get(path)
        if cached is not None:
            return cached
        try:
            response = await client.get(self.url_for(path))
        except httpx.HTTPError as exc:
            print_warning(f"Failed to fetch {path}: {exc}")
            return None
        if response.status_code != 200:
            print_warning(f"Failed to fetch {path}: HTTP {response.status_code}")
            return None
        self.cache.put(path, response.text)
        return response.text

    async def resolve(self, sources: dict[str, str]) -> tuple[dict[str, str], list[str]]:
        """Resolve imports of *sources* to a fixed point.

        Returns:
            ``(resolved_sources, unresolved)`` where *resolved_sources*
            contains the input plus every fetched file and *unresolved* lists
            the imports that could not be satisfied.
        """
        resolved = dict(sources)
        unresolved: set[str] = set()
        frontier = list(resolved)

        async with self._client() as client:
            while frontier:
                wanted: set[str] = set()
                for name in frontier:
                    for raw in find_imports(resolved[name]):
                        target = normalize_import(name, raw)
                        if target is None:
                            unresolved.add(raw)
                        elif target in resolved:
                            continue
                        elif target.startswith(OZ_PREFIX):
                            wanted.add(target)
                        else:
                            unresolved.add(target)

                ordered = sorted(wanted)
                contents = await asyncio.gather(*(self.fetch(client, path) for path in ordered))

                frontier = []
                for path, content in zip(ordered, contents):
                    if content is None:
                        unresolved.add(path)
                    else:
                        resolved[path] = content
                        frontier.append(path)

        return resolved, sorted(unresolved)
