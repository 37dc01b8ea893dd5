"""Exceptions raised by the store layer and the wizard, plus the error kinds
the controller surfaces to its caller."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class IntakeError(Exception):
    """Base class for all intake errors.

    ``retryable`` is a class default; pass ``retryable=`` to override it for
    one instance.
    """

    retryable = False

    def __init__(self, *args: object, retryable: bool | None = None) -> None:
        super().__init__(*args)
        if retryable is not None:
            self.retryable = retryable


# ── Store ────────────────────────────────────────────────────────────

class StoreUnavailable(IntakeError):
    """Store could not be reached, timed out or answered 5xx."""

    retryable = True


class StoreError(IntakeError):
    """Store answered with a non-2xx status that is not a server fault."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message


class DraftNotFound(IntakeError):
    def __init__(self, draft_id: str) -> None:
        super().__init__(f"Draft {draft_id} does not exist")
        self.draft_id = draft_id


class DraftSuperseded(IntakeError):
    def __init__(self, draft_id: str) -> None:
        super().__init__(f"Draft {draft_id} was already finalized")
        self.draft_id = draft_id


class CustomerConflict(IntakeError):
    """Customer data collides with another customer (unique identification)."""


# ── Wizard components ────────────────────────────────────────────────

class ResolverUnavailable(IntakeError):
    """Duplicate lookup failed; says nothing about whether a duplicate exists."""

    retryable = True


class DraftSaveError(IntakeError):
    retryable = True


class FinalizationError(IntakeError):
    retryable = True


class SessionClosed(IntakeError):
    pass


class StaleResponse(IntakeError):
    """A store response arrived for a form that has since been discarded."""


# ── Surfaced to the caller ───────────────────────────────────────────

class ErrorKind(str, Enum):
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    RESOLVER = "resolver"
    PERSISTENCE = "persistence"
    FINALIZATION = "finalization"


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str
    retryable: bool = False
    field: str | None = None
