"""Error taxonomy shared by the renderer, the delivery adapter and the orchestrator.

Every failure a dispatch can produce is one of five kinds.  Components raise
the matching subclass; the HTTP boundary maps ``kind`` to a status code and a
failure envelope.  Nothing below the boundary converts one kind into another.
"""
from __future__ import annotations

from typing import Literal

ErrorKind = Literal["validation", "not_found", "invalid_state", "delivery_failed", "render_error"]


class DispatchError(Exception):
    kind: ErrorKind = "delivery_failed"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DispatchValidationError(DispatchError):
    """Raised when a request is malformed or incomplete; never attempted."""

    kind: ErrorKind = "validation"
    status_code = 400

    def __init__(self, errors: list[dict[str, str]], message: str = "Erreur de validation") -> None:
        super().__init__(message)
        self.errors = errors


class NotFoundError(DispatchError, KeyError):
    """Raised when a referenced record is absent or not owned by the caller."""

    kind: ErrorKind = "not_found"
    status_code = 404

    def __str__(self) -> str:
        return self.message


class InvalidStateError(DispatchError):
    """Raised when a record exists but misses a dispatch precondition."""

    kind: ErrorKind = "invalid_state"
    status_code = 400


class DeliveryFailedError(DispatchError):
    """Raised when the email provider rejected the send or was unreachable."""

    kind: ErrorKind = "delivery_failed"
    status_code = 500

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class RenderError(DispatchError):
    """Raised when a document template cannot be read or rasterized."""

    kind: ErrorKind = "render_error"
    status_code = 500
