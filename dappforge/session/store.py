"""Per-session in-memory ledger of project build state."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..models import ProjectState, utc_now

_READ_ONLY_FIELDS = frozenset({"id", "created_at", "updated_at"})
_PATCHABLE_FIELDS = frozenset(ProjectState.model_fields) - _READ_ONLY_FIELDS


def _next_stamp(previous: datetime) -> datetime:
    """Return a timestamp strictly later than *previous*."""
    now = utc_now()
    if now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def _new_state(project_id: str) -> ProjectState:
    try:
        return ProjectState(id=project_id)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid project id {project_id!r}") from exc


class ProjectStore:
    """Holds the :class:`ProjectState` of every project in one session.

    All mutation goes through :meth:`update`, which applies a merge-patch and
    stamps ``updated_at`` so that it strictly increases per project.
    """

    def __init__(self) -> None:
        self._projects: dict[str, ProjectState] = {}

    def __len__(self) -> int:
        return len(self._projects)

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._projects

    def get(self, project_id: str) -> Optional[ProjectState]:
        return self._projects.get(project_id)

    def get_or_create(self, project_id: str) -> ProjectState:
        state = self._projects.get(project_id)
        if state is None:
            state = self._projects[project_id] = _new_state(project_id)
        return state

    def update(self, project_id: str, patch: dict[str, Any]) -> ProjectState:
        """Merge *patch* into the project's state, creating it on demand.

        A ``None`` value clears an optional field. A rejected patch leaves
        the store unchanged, including for a project it would have created.

        Raises:
            ValidationError: If *patch* names an unknown or read-only field, or
                a value does not fit the field's type.
        """
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot patch project fields: {', '.join(sorted(unknown))}"
            )

        current = self._projects.get(project_id) or _new_state(project_id)
        merged = {**current.model_dump(), **patch, "updated_at": _next_stamp(current.updated_at)}
        try:
            updated = ProjectState.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid patch for project {project_id!r}: {exc}") from exc

        self._projects[project_id] = updated
        return updated

    def delete(self, project_id: str) -> bool:
        return self._projects.pop(project_id, None) is not None

    def list(self) -> list[ProjectState]:
        return sorted(self._projects.values(), key=lambda s: s.created_at)

    def clear(self) -> None:
        self._projects.clear()
