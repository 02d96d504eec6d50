"""Typed failures raised by the possession services.

Every error carries a stable ``code`` that the HTTP layer exposes unchanged,
so clients can branch on it without parsing messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from uuid import UUID

    from possession.db.models.base import PossessionStatus


class PossessionError(Exception):
    """Base class for possession domain errors."""

    code: str = "possession_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_detail(self) -> dict[str, Any] | None:
        """Structured detail for API responses (None when the message says it all)."""
        return None


class PossessionNotFoundError(PossessionError):
    """Raised when a possession record does not exist or was deleted."""

    code = "possession_not_found"

    def __init__(self, identifier: UUID | str) -> None:
        self.identifier = identifier
        super().__init__(f"Possession {identifier} not found")


class IllegalTransitionError(PossessionError):
    """Raised when the transition table forbids the requested status change."""

    code = "illegal_transition"

    def __init__(
        self,
        current_status: PossessionStatus,
        requested_status: PossessionStatus,
        allowed: list[PossessionStatus] | None = None,
    ) -> None:
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed = allowed or []
        super().__init__(
            f"Cannot transition from {current_status.value} to {requested_status.value}"
        )

    def to_detail(self) -> dict[str, Any]:
        return {
            "current_status": self.current_status.value,
            "requested_status": self.requested_status.value,
            "allowed_statuses": [s.value for s in self.allowed],
        }


class DuplicateActivePossessionError(PossessionError):
    """Raised when a plot already has an active possession record."""

    code = "duplicate_active_possession"

    def __init__(self, plot_id: str, existing_code: str | None) -> None:
        self.plot_id = plot_id
        self.existing_code = existing_code
        super().__init__(
            f"Plot {plot_id} already has an active possession record"
            + (f": {existing_code}" if existing_code else "")
        )

    def to_detail(self) -> dict[str, Any]:
        return {"plot_id": self.plot_id, "existing_possession_code": self.existing_code}


class ValidationFailedError(PossessionError):
    """Raised with every failing field of a request, not only the first."""

    code = "validation_failed"

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        super().__init__(
            "Validation failed: " + "; ".join(f"{k}: {v}" for k, v in self.errors.items())
        )

    @property
    def fields(self) -> list[str]:
        return list(self.errors)

    def to_detail(self) -> dict[str, Any]:
        return {"fields": self.errors}


class CodeAllocationExhaustedError(PossessionError):
    """Raised when no unique possession code could be allocated."""

    code = "code_allocation_exhausted"

    def __init__(self, prefix: str, attempts: int) -> None:
        self.prefix = prefix
        self.attempts = attempts
        super().__init__(f"Could not allocate a unique {prefix} code after {attempts} attempts")


class ConflictingConcurrentUpdateError(PossessionError):
    """Raised when another writer changed the record first."""

    code = "conflicting_concurrent_update"

    def __init__(self, identifier: UUID | str) -> None:
        self.identifier = identifier
        super().__init__(f"Possession {identifier} was modified concurrently; reload and retry")
