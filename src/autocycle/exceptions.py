"""
exceptions.py — autocycle Unified Error Hierarchy

All autocycle-specific exceptions live here. Every layer of the stack
raises typed subclasses of AutocycleError — never bare Exception.

Import from here, not from individual modules:
    from autocycle.exceptions import ConfigurationError, FatalCollaboratorError

Hierarchy:
    AutocycleError
    ├── ConfigurationError
    ├── CollaboratorError
    │   └── FatalCollaboratorError
    ├── PersistenceError
    └── SchedulerInvariantError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class AutocycleError(Exception):
    """Base class for all autocycle exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Setup / registration
# ─────────────────────────────────────────────────────────────────────────────

class ConfigurationError(AutocycleError):
    """
    Invalid setup: duplicate activity key, non-positive weight, empty
    activity set, or a tracker update against an unknown key.

    Always raised synchronously at setup or registration time.
    """


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators (work callables, session predicate, metric probes)
# ─────────────────────────────────────────────────────────────────────────────

class CollaboratorError(AutocycleError):
    """A work callable failed. The cycle counts as a no-op and the loop continues."""

    def __init__(self, message: str = "", key: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message or f"Activity '{key}' failed.")


class FatalCollaboratorError(CollaboratorError):
    """A collaborator signalled an unrecoverable condition (e.g. session lost)."""


# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────

class PersistenceError(AutocycleError):
    """A profile save or load failed. Non-fatal to the run, reported in RunResult."""

    def __init__(self, profile_id: str, operation: str, message: str = "") -> None:
        self.profile_id = profile_id
        self.operation = operation
        super().__init__(message or f"Profile '{profile_id}' {operation} failed.")


# ─────────────────────────────────────────────────────────────────────────────
# Internal
# ─────────────────────────────────────────────────────────────────────────────

class SchedulerInvariantError(AutocycleError):
    """An internal invariant was violated (programming error, e.g. selecting from an empty pool)."""


__all__ = [
    "AutocycleError",
    "ConfigurationError",
    "CollaboratorError",
    "FatalCollaboratorError",
    "PersistenceError",
    "SchedulerInvariantError",
]
