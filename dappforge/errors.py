"""Domain exception hierarchy for DappForge.

Components raise these instead of bare ``ValueError``/``RuntimeError`` so the
transport can map them to the correct HTTP status code and the pipeline can
tell retryable provider failures from malformed requests.
"""

from __future__ import annotations

from typing import Any


class DappForgeError(Exception):
    """Base for all domain exceptions."""

    status_code: int = 500

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DappForgeError):
    """Malformed request. Fails fast and is never retried."""

    status_code = 400


class ExternalServiceError(DappForgeError):
    """A generation, compiler, scanner, test-runner or provider call failed.

    Attributes:
        provider: Short name of the failing service (``"ollama"``, ``"solc"``,
            ``"github"``...).
        reason: Provider-specific reason or error code.
    """

    status_code = 502

    def __init__(self, provider: str, message: str, *, reason: str = "") -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider}: {message}")


class NoParseableArtifacts(ExternalServiceError):
    """The generator answered, but no artifact markers could be parsed."""

    def __init__(self, message: str = "response contained no parseable artifacts") -> None:
        super().__init__("generator", message, reason="NO_ARTIFACTS")


class AuthError(ExternalServiceError):
    """A provider rejected the supplied credentials. Never retried."""

    status_code = 401


class ProcessError(DappForgeError):
    """A chain-node process failed to start, answer, or was refused."""

    status_code = 500

    def __init__(self, message: str, *, project_id: str = "", output: str = "") -> None:
        self.project_id = project_id
        self.output = output
        super().__init__(message)


class ResourceConflict(DappForgeError):
    """A name or port is already taken."""

    status_code = 409


class NameTaken(ResourceConflict):
    """A repository name stayed taken after every mutated retry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'Repository name "{name}" is not available')


class BudgetExhausted(DappForgeError):
    """A fix loop reached its iteration cap without verifying.

    Carries the most recent artifacts and diagnostics so callers can present
    exactly what is still broken.
    """

    status_code = 422

    def __init__(
        self,
        stage: str,
        diagnostics: list[str],
        artifacts: Any = None,
    ) -> None:
        self.stage = stage
        self.diagnostics = diagnostics
        self.artifacts = artifacts
        super().__init__(
            f"{stage} still failing after fix budget: {len(diagnostics)} diagnostic(s)"
        )


def format_error_response(
    *,
    error: str,
    detail: object = None,
    request_id: str = "",
) -> dict[str, Any]:
    """Build a structured error response dict.

    Returns:
        ``{"error": ..., "detail": ..., "request_id": ...}``
    """
    return {
        "error": error,
        "detail": detail if detail is not None else error,
        "request_id": request_id,
    }
