from __future__ import annotations


class ConsentError(Exception):
    """Base error for the consent engine."""


class ConsentNotFoundError(ConsentError):
    """A statement, version, or consent record lookup missed."""


class ConsentValidationError(ConsentError):
    """Input or state does not allow the requested consent operation."""


class ConsentConflictError(ConsentError):
    """A uniquely keyed consent object already exists."""
