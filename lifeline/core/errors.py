from __future__ import annotations


class LifelineError(ValueError):
    """Base for every expected business-rule failure.

    Subclasses ``ValueError`` so callers that only know the generic
    "invalid input" contract keep working.
    """

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LifelineError):
    status_code = 404


class ConflictError(LifelineError):
    status_code = 409


class ValidationError(LifelineError):
    status_code = 400


class StateConflictError(LifelineError):
    status_code = 409
