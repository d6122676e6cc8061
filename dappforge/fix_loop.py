"""Bounded verify/fix cycles.

After a verification stage fails, its diagnostics are routed to a fix
callback and the stage is re-verified. The loop continues for up to
*max_iterations* fix attempts or until the stage verifies.

Verification and fixing are abstracted behind callbacks so the same loop
serves compilation, security scanning and testing.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from rich.panel import Panel

from .errors import ExternalServiceError
from .models import GeneratedCode, StageOutcome, StageResult
from .utils import console

# async (artifacts) -> StageResult (verified or failed_retryable)
VerifyCallback = Callable[[Any], Awaitable[StageResult]]
# async (artifacts, diagnostics) -> new artifacts, or None when nothing usable came back
FixCallback = Callable[[Any, list[str]], Awaitable[Optional[Any]]]
# async (iteration) -> None, called before each fix attempt
IterationCallback = Callable[[int], Awaitable[None]]


def _usable(candidate: Any) -> bool:
    if candidate is None:
        return False
    if isinstance(candidate, GeneratedCode):
        return candidate.has_contracts
    if isinstance(candidate, (list, tuple, dict, str)):
        return len(candidate) > 0
    return True


class FixLoop:
    """Drives one stage's fix attempts.

    Parameters
    ----------
    max_iterations:
        Maximum number of fix attempts before the stage is reported as
        ``failed_exhausted``.
    """

    def __init__(self, max_iterations: int = 3) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.max_iterations = max_iterations

    async def run(
        self,
        stage: str,
        artifacts: Any,
        initial: StageResult,
        verify: VerifyCallback,
        fix: FixCallback,
        *,
        on_iteration: Optional[IterationCallback] = None,
    ) -> StageResult:
        """Execute the loop starting from the *initial* verification.

        Returns a ``verified`` result carrying the fixed artifacts, or a
        ``failed_exhausted`` result carrying the last artifacts and the
        diagnostics of the last failed verification.
        """
        if initial.is_verified:
            return initial.model_copy(update={"artifacts": artifacts, "iterations": 0})

        current = initial
        for iteration in range(1, self.max_iterations + 1):
            console.print(
                Panel(
                    f"[bold]{stage.title()} Fix Iteration {iteration}/{self.max_iterations}[/bold]\n"
                    f"{len(current.errors)} diagnostic(s) outstanding",
                    style="magenta",
                )
            )
            if on_iteration is not None:
                await on_iteration(iteration)

            try:
                candidate = await fix(artifacts, current.errors)
            except ExternalServiceError as exc:
                console.print(f"  [red]Fix attempt errored: {exc}[/red]")
                candidate = None

            if not _usable(candidate):
                console.print(
                    "  [yellow]Fix attempt produced no usable artifacts; keeping previous ones.[/yellow]"
                )
                continue

            artifacts = candidate
            current = await verify(artifacts)
            if current.is_verified:
                console.print(
                    f"[green bold]{stage.title()} verified after iteration {iteration}.[/green bold]"
                )
                return current.model_copy(update={"artifacts": artifacts, "iterations": iteration})

            console.print(
                f"[yellow]{len(current.errors)} diagnostic(s) remaining after iteration {iteration}.[/yellow]"
            )

        console.print(
            f"[red]{stage.title()} fix loop exhausted after {self.max_iterations} iterations. "
            f"{len(current.errors)} diagnostic(s) remain.[/red]"
        )
        return StageResult(
            stage=stage,
            outcome=StageOutcome.FAILED_EXHAUSTED,
            errors=list(current.errors),
            artifacts=artifacts,
            iterations=self.max_iterations,
        )
