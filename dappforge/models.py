"""Pydantic v2 models shared across the build engine.

Covers generated artifacts, the project plan that drives generation, the
outcome of every collaborator call (compile, scan, test, deploy), per-project
state, and the request/result pair of a full build.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic import ValidationError as PydanticValidationError

from .errors import BudgetExhausted, DappForgeError, ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class PipelineState(str, Enum):
    """Lifecycle state of a build, also used as the progress status."""
    DRAFT = "draft"
    GENERATING = "generating"
    COMPILING = "compiling"
    FIXING_COMPILATION = "fixing_compilation"
    CHECKING_SECURITY = "checking_security"
    FIXING_SECURITY = "fixing_security"
    TESTING = "testing"
    FIXING_TESTS = "fixing_tests"
    ASSEMBLING = "assembling"
    ASSEMBLED = "assembled"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    ABORTED = "aborted"
    PARTIAL_SUCCESS = "partial_success"


class StageOutcome(str, Enum):
    """Tagged outcome of one pipeline stage."""
    VERIFIED = "verified"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_EXHAUSTED = "failed_exhausted"
    SKIPPED = "skipped"


class BuildStatus(str, Enum):
    """Overall status of a finished build."""
    SUCCESS = "success"
    PARTIAL = "partial"
    ABORTED = "aborted"


class Severity(str, Enum):
    """Security finding severity. Only ``error`` blocks a build."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


# ---------------------------------------------------------------------------
# Generated artifacts
# ---------------------------------------------------------------------------

class Contract(BaseModel):
    """A Solidity source file produced by the generator."""
    name: str = Field(
        ..., min_length=1, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$", description="Contract name without extension"
    )
    content: str = Field(..., description="Full Solidity source")


class TestFile(BaseModel):
    """A Foundry test file. Written to disk under a ``.t.sol`` name."""
    __test__ = False

    name: str = Field(..., min_length=1, pattern=r"^[^/\\]+$", description="File name, no directories")
    content: str


class Page(BaseModel):
    """A front-end source file, addressed relative to the web package root."""
    path: str = Field(..., min_length=1, description="e.g. 'app/page.tsx'")
    content: str


class GeneratedCode(BaseModel):
    """The full artifact set a build works on."""
    contracts: list[Contract] = Field(default_factory=list)
    tests: list[TestFile] = Field(default_factory=list)
    pages: list[Page] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def has_contracts(self) -> bool:
        return len(self.contracts) > 0


# ---------------------------------------------------------------------------
# Project plan
# ---------------------------------------------------------------------------

class PagePlan(BaseModel):
    """A target front-end page described in the plan."""
    path: str = Field(..., min_length=1)
    description: str = Field(default="")


class ProjectPlan(BaseModel):
    """What the generator is asked to build.

    A plan must name the main contract, describe it, and carry the feature
    and page lists before a build may start.
    """
    contract_name: str = Field(..., min_length=1, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    description: str = Field(..., min_length=1)
    features: list[str] = Field(..., description="Feature bullet points")
    pages: list[PagePlan] = Field(..., description="Target front-end pages")
    suggested_project_name: Optional[str] = Field(default=None)


# ---------------------------------------------------------------------------
# Collaborator results
# ---------------------------------------------------------------------------

class CompileResult(BaseModel):
    """Outcome of compiling a contract set."""
    success: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    contract_name: Optional[str] = Field(default=None, description="Contract the ABI/bytecode belong to")
    abi: Optional[list[Any]] = None
    bytecode: Optional[str] = None
    deployed_bytecode: Optional[str] = None


class SecurityWarning(BaseModel):
    """A single pattern-analysis finding."""
    severity: Severity
    rule: str = Field(..., description="Short rule identifier, e.g. 'tx-origin'")
    message: str
    contract: str = Field(default="")
    line: Optional[int] = Field(default=None, ge=1)
    recommendation: str = Field(default="")

    def describe(self) -> str:
        location = f"{self.contract}:{self.line}" if self.line else self.contract
        return f"[{self.severity.value}] {self.rule} at {location}: {self.message}"


class GasEstimate(BaseModel):
    """Rough deployment cost of a bytecode blob."""
    deployment_gas: int = Field(..., ge=0)
    gas_price_gwei: float = Field(default=30.0, ge=0)
    cost_eth: float = Field(..., ge=0)
    cost_usd: float = Field(..., ge=0)


class SizeCheck(BaseModel):
    """Deployed-size check against the 24 KiB contract size limit."""
    size_bytes: int = Field(..., ge=0)
    max_bytes: int = Field(default=24576)

    @computed_field  # type: ignore[misc]
    @property
    def within_limit(self) -> bool:
        return self.size_bytes < self.max_bytes

    @computed_field  # type: ignore[misc]
    @property
    def percentage(self) -> float:
        return round(self.size_bytes / self.max_bytes * 100, 1)


class TestFailure(BaseModel):
    """A single failed Foundry test."""
    __test__ = False

    name: str
    reason: str = Field(default="")


class TestRunResult(BaseModel):
    """Outcome of running the test suite against a contract set."""
    __test__ = False

    passed: list[str] = Field(default_factory=list)
    failed: list[TestFailure] = Field(default_factory=list)
    raw_output: str = Field(default="")
    error: str = Field(default="", description="Runner-level failure such as a build error")

    @computed_field  # type: ignore[misc]
    @property
    def success(self) -> bool:
        return not self.failed and not self.error

    def diagnostics(self) -> list[str]:
        lines = [f"{f.name}: {f.reason}" if f.reason else f.name for f in self.failed]
        if self.error:
            lines.append(self.error)
        return lines


class LocalDeployResult(BaseModel):
    """What the local-deploy collaborator parsed from its run."""
    contract_address: str
    tx_hash: Optional[str] = None
    output: str = Field(default="")


class DeploymentInfo(BaseModel):
    """Deployment record written into the assembled project."""
    contract_name: str
    contract_address: str
    tx_hash: Optional[str] = None
    rpc_url: str
    chain_id: int = Field(default=31337)
    network: str = Field(default="anvil")
    deployer: str = Field(default="")
    abi: list[Any] = Field(default_factory=list)
    deployed_at: datetime = Field(default_factory=utc_now)


class ProjectFile(BaseModel):
    """A file of an assembled project, relative to the project root."""
    relative_path: str
    content: str


class DevAccount(BaseModel):
    """A pre-funded development account of the local chain node."""
    address: str
    private_key: str


# ---------------------------------------------------------------------------
# Project state
# ---------------------------------------------------------------------------

class ProjectState(BaseModel):
    """Per-session build state of one project."""
    id: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    project_path: Optional[str] = None
    anvil_rpc_url: Optional[str] = None
    anvil_port: Optional[int] = None
    deployment_info: Optional[DeploymentInfo] = None
    repo_url: Optional[str] = None
    deployment_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------

class StageResult(BaseModel):
    """Outcome of a pipeline stage.

    ``artifacts`` always holds the most recent usable artifacts for the
    stage, even when the stage failed.
    """
    stage: str
    outcome: StageOutcome
    errors: list[str] = Field(default_factory=list)
    artifacts: Any = None
    iterations: int = Field(default=0, ge=0, description="Fix attempts consumed")

    @classmethod
    def verified(cls, stage: str, artifacts: Any = None) -> "StageResult":
        return cls(stage=stage, outcome=StageOutcome.VERIFIED, artifacts=artifacts)

    @classmethod
    def retryable(cls, stage: str, errors: list[str], artifacts: Any = None) -> "StageResult":
        return cls(
            stage=stage,
            outcome=StageOutcome.FAILED_RETRYABLE,
            errors=list(errors),
            artifacts=artifacts,
        )

    @classmethod
    def skipped(cls, stage: str, reason: str = "") -> "StageResult":
        return cls(stage=stage, outcome=StageOutcome.SKIPPED, errors=[reason] if reason else [])

    @property
    def is_verified(self) -> bool:
        return self.outcome == StageOutcome.VERIFIED

    @property
    def is_exhausted(self) -> bool:
        return self.outcome == StageOutcome.FAILED_EXHAUSTED


# ---------------------------------------------------------------------------
# Build request / result
# ---------------------------------------------------------------------------

ProgressCallback = Callable[..., Any]


class BuildRequest(BaseModel):
    """Input of a full build.

    ``on_progress`` is called as ``on_progress(status, message, iteration)``
    and may be a plain function or a coroutine function.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    prompt: str = Field(..., min_length=1)
    plan: ProjectPlan
    existing_code: Optional[GeneratedCode] = None
    max_iterations: int = Field(default=3, ge=1)
    on_progress: Optional[ProgressCallback] = Field(default=None, exclude=True)
    project_id: str = Field(default="default", min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    answers: Optional[dict[str, str]] = None
    deploy_local: bool = False
    proceed_on_partial: bool = False
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], **overrides: Any) -> "BuildRequest":
        """Validate an untrusted payload, raising the domain ``ValidationError``."""
        try:
            return cls.model_validate({**payload, **overrides})
        except PydanticValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise ValidationError(f"Invalid build request: {problems}") from exc


class BuildResult(BaseModel):
    """Final, structured outcome of a build."""
    status: BuildStatus
    state: PipelineState
    project_id: str
    code: GeneratedCode = Field(default_factory=GeneratedCode)
    stages: dict[str, StageResult] = Field(default_factory=dict)
    compile_result: Optional[CompileResult] = None
    security_warnings: list[SecurityWarning] = Field(default_factory=list)
    gas_estimate: Optional[GasEstimate] = None
    size_check: Optional[SizeCheck] = None
    test_result: Optional[TestRunResult] = None
    project_path: Optional[str] = None
    deployment: Optional[DeploymentInfo] = None
    fix_iterations: int = Field(default=0, ge=0)
    elapsed_seconds: float = Field(default=0.0, ge=0.0)
    logs: list[str] = Field(default_factory=list)
    error: Optional[str] = None

    @computed_field  # type: ignore[misc]
    @property
    def succeeded(self) -> bool:
        return self.status == BuildStatus.SUCCESS

    def exhausted_stages(self) -> list[StageResult]:
        return [s for s in self.stages.values() if s.is_exhausted]

    def summary_dict(self) -> dict[str, Any]:
        """Return a flat dict suitable for a summary table."""
        return {
            "status": self.status.value,
            "state": self.state.value,
            "contracts": len(self.code.contracts),
            "tests": len(self.code.tests),
            "pages": len(self.code.pages),
            "fix_iterations": self.fix_iterations,
            "security_warnings": len(self.security_warnings),
            "project_path": self.project_path or "-",
            "contract_address": self.deployment.contract_address if self.deployment else "-",
        }

    def raise_for_status(self) -> "BuildResult":
        """Raise when the build did not fully succeed.

        Raises:
            BudgetExhausted: For partial builds, carrying the first exhausted
                stage's diagnostics and last artifacts.
            DappForgeError: For aborted builds.
        """
        if self.status == BuildStatus.PARTIAL:
            exhausted = self.exhausted_stages()
            stage = exhausted[0] if exhausted else None
            raise BudgetExhausted(
                stage.stage if stage else "build",
                stage.errors if stage else [],
                stage.artifacts if stage else self.code,
            )
        if self.status == BuildStatus.ABORTED:
            raise DappForgeError(self.error or "Build aborted")
        return self
