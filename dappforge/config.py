"""DappForge configuration.

Centralised, typed configuration for the build engine, the chain-node process
manager and the HTTP transport. All settings use Pydantic v2 models so they
can be validated at construction time and serialised to/from JSON or
environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator


class ChainConfig(BaseModel):
    """Local test-chain (anvil) process settings.

    Node ports are drawn from ``port_range_start..port_range_end``. The
    default band starts at 23100 and MUST never collide with common
    development ports (3000, 5000, 8000, 8080, 8545).
    """

    anvil_binary: str = Field(default="anvil")
    host: str = Field(default="127.0.0.1")
    port_range_start: int = Field(default=23100, ge=1024, le=65535)
    port_range_end: int = Field(default=23999, ge=1024, le=65535)
    startup_timeout: float = Field(
        default=10.0, gt=0, description="Seconds to wait for the node to answer RPC"
    )
    stop_timeout: float = Field(
        default=5.0, gt=0, description="Seconds to wait after SIGTERM before killing"
    )
    poll_interval: float = Field(default=0.25, gt=0)

    @model_validator(mode="after")
    def _check_range(self) -> "ChainConfig":
        if self.port_range_end < self.port_range_start:
            raise ValueError("port_range_end must be >= port_range_start")
        return self


class OllamaConfig(BaseModel):
    """Configuration for the Ollama server that backs code generation."""

    url: str = Field(default="http://localhost:11434")
    code_model: str = Field(default="qwen2.5-coder:32b")
    code_model_fallback: str = Field(default="qwen2.5-coder:14b")
    timeout: int = Field(default=300, ge=10, description="Per-request timeout in seconds")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="Sampling temperature for code")
    context_window: int = Field(default=16384, ge=2048, description="num_ctx sent with each request")


class CompilerConfig(BaseModel):
    """Solidity compiler and library-source settings."""

    solc_binary: str = Field(default="solc")
    openzeppelin_version: str = Field(default="5.0.0")
    unpkg_url: str = Field(default="https://unpkg.com")
    optimizer_runs: int = Field(default=200, ge=0)
    timeout: int = Field(default=120, ge=5)


class TesterConfig(BaseModel):
    """Foundry test-runner settings."""

    forge_binary: str = Field(default="forge")
    timeout: int = Field(default=120, ge=5)
    install_libs: bool = Field(
        default=True, description="Install forge-std and OpenZeppelin before running"
    )
    solc_version: str = Field(default="0.8.20")


class BuildConfig(BaseModel):
    """Tuning knobs for the build pipeline."""

    max_fix_iterations: int = Field(
        default=3, ge=1, description="Maximum fix attempts per verification stage"
    )
    build_timeout: int = Field(
        default=300, ge=1, description="Overall build deadline in seconds"
    )


class DeployConfig(BaseModel):
    """Source-control and hosting provider settings."""

    github_api_url: str = Field(default="https://api.github.com")
    vercel_api_url: str = Field(default="https://api.vercel.com")
    max_name_retries: int = Field(default=3, ge=0)
    repo_settle_seconds: float = Field(
        default=2.0, ge=0, description="Pause after repo creation before pushing"
    )
    vercel_poll_interval: float = Field(default=3.0, gt=0)
    vercel_poll_timeout: float = Field(default=180.0, gt=0)


class ServerConfig(BaseModel):
    """HTTP transport settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, ge=1, le=65535)


class Config(BaseModel):
    """Global DappForge configuration.

    Holds every tuneable parameter and derived path. Instances are created
    once by the CLI or the server entry point and then passed through the
    rest of the system.
    """

    workspace_dir: Path = Field(default=Path("./.dappforge"))
    chain: ChainConfig = Field(default_factory=ChainConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    compiler: CompilerConfig = Field(default_factory=CompilerConfig)
    tester: TesterConfig = Field(default_factory=TesterConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def projects_dir(self) -> Path:
        """Directory that holds assembled projects, one per scoped project id."""
        return self.workspace_dir / "projects"

    @property
    def config_path(self) -> Path:
        """Default location of the persisted configuration."""
        return self.workspace_dir / "config.json"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<workspace_dir>/config.json``.

        Returns:
            The resolved path where the file was written.
        """
        target = path or self.config_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            DAPPFORGE_WORKSPACE_DIR,
            DAPPFORGE_ANVIL_BINARY, DAPPFORGE_PORT_RANGE (``start-end``),
            DAPPFORGE_ANVIL_STARTUP_TIMEOUT,
            DAPPFORGE_OLLAMA_URL, DAPPFORGE_OLLAMA_CODE_MODEL, DAPPFORGE_OLLAMA_TIMEOUT,
            DAPPFORGE_SOLC_BINARY, DAPPFORGE_FORGE_BINARY,
            DAPPFORGE_MAX_FIX_ITERATIONS, DAPPFORGE_BUILD_TIMEOUT,
            DAPPFORGE_HOST, DAPPFORGE_PORT.
        """
        chain_kwargs: dict[str, Any] = {}
        if os.environ.get("DAPPFORGE_ANVIL_BINARY"):
            chain_kwargs["anvil_binary"] = os.environ["DAPPFORGE_ANVIL_BINARY"]
        if os.environ.get("DAPPFORGE_PORT_RANGE"):
            start, _, end = os.environ["DAPPFORGE_PORT_RANGE"].partition("-")
            chain_kwargs["port_range_start"] = int(start)
            chain_kwargs["port_range_end"] = int(end or start)
        if os.environ.get("DAPPFORGE_ANVIL_STARTUP_TIMEOUT"):
            chain_kwargs["startup_timeout"] = float(os.environ["DAPPFORGE_ANVIL_STARTUP_TIMEOUT"])

        ollama_kwargs: dict[str, Any] = {}
        if os.environ.get("DAPPFORGE_OLLAMA_URL"):
            ollama_kwargs["url"] = os.environ["DAPPFORGE_OLLAMA_URL"]
        if os.environ.get("DAPPFORGE_OLLAMA_CODE_MODEL"):
            ollama_kwargs["code_model"] = os.environ["DAPPFORGE_OLLAMA_CODE_MODEL"]
        if os.environ.get("DAPPFORGE_OLLAMA_TIMEOUT"):
            ollama_kwargs["timeout"] = int(os.environ["DAPPFORGE_OLLAMA_TIMEOUT"])

        compiler_kwargs: dict[str, Any] = {}
        if os.environ.get("DAPPFORGE_SOLC_BINARY"):
            compiler_kwargs["solc_binary"] = os.environ["DAPPFORGE_SOLC_BINARY"]

        tester_kwargs: dict[str, Any] = {}
        if os.environ.get("DAPPFORGE_FORGE_BINARY"):
            tester_kwargs["forge_binary"] = os.environ["DAPPFORGE_FORGE_BINARY"]

        build_kwargs: dict[str, Any] = {}
        if os.environ.get("DAPPFORGE_MAX_FIX_ITERATIONS"):
            build_kwargs["max_fix_iterations"] = int(os.environ["DAPPFORGE_MAX_FIX_ITERATIONS"])
        if os.environ.get("DAPPFORGE_BUILD_TIMEOUT"):
            build_kwargs["build_timeout"] = int(os.environ["DAPPFORGE_BUILD_TIMEOUT"])

        server_kwargs: dict[str, Any] = {}
        if os.environ.get("DAPPFORGE_HOST"):
            server_kwargs["host"] = os.environ["DAPPFORGE_HOST"]
        if os.environ.get("DAPPFORGE_PORT"):
            server_kwargs["port"] = int(os.environ["DAPPFORGE_PORT"])

        return cls(
            workspace_dir=Path(os.environ.get("DAPPFORGE_WORKSPACE_DIR", "./.dappforge")),
            chain=ChainConfig(**chain_kwargs),
            ollama=OllamaConfig(**ollama_kwargs),
            compiler=CompilerConfig(**compiler_kwargs),
            tester=TesterConfig(**tester_kwargs),
            build=BuildConfig(**build_kwargs),
            server=ServerConfig(**server_kwargs),
        )

    def ensure_directories(self) -> None:
        """Create the directories that must exist before the engine runs."""
        for directory in (self.workspace_dir, self.projects_dir):
            directory.mkdir(parents=True, exist_ok=True)
