"""
Typed failures raised by the ledger engine.

Each error carries an HTTP-style status hint so the surrounding API layer can
translate it without knowing the engine's internals. The engine itself is
transport-agnostic: it only signals kind + message.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base ledger error with status code."""
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Payload for the caller's error response."""
        payload = {'error': self.kind, 'message': self.message}
        if self.details is not None:
            payload['details'] = self.details
        return payload


class NotFoundError(LedgerError):
    """Referenced apartment, expense, payment, charge or entry does not exist."""
    status_code = 404


class InvalidStateError(LedgerError):
    """Operation is not allowed in the record's current state."""
    status_code = 400


class ValidationError(LedgerError):
    """Input is malformed or inconsistent (bad amount, wrong building, ...)."""
    status_code = 400
