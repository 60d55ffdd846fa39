# Overview: Error taxonomy for ledger and production commands; mapped to HTTP responses in create_app.

from __future__ import annotations

from typing import Any


class OperationsError(Exception):
    """
    Base class for every error a command reports to its caller.

    `context` carries the identifiers a UI needs to render the message
    (lot code, requested vs. available quantity, batch code).
    """

    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict:
        payload = {"error": self.message}
        for key, value in self.context.items():
            payload[key] = str(value) if not isinstance(value, (int, str, bool, list)) else value
        return payload


class ValidationError(OperationsError, ValueError):
    """400-level input problem (non-positive quantity, mismatched units, bad field)."""

    status_code = 400


class InsufficientQuantity(OperationsError):
    """Requested movement exceeds the lot's as-of balance."""

    status_code = 409


class BatchLocked(OperationsError):
    """Mutation attempted on a locked production batch."""

    status_code = 409


class InvalidState(OperationsError):
    """Illegal state transition (locking a pending/hold batch, incomplete outputs, archive too early)."""

    status_code = 409


class NotFound(OperationsError, LookupError):
    status_code = 404


class AllocationExhausted(OperationsError):
    """Identifier allocator ran out of retries."""

    status_code = 503


class IntegrityViolation(OperationsError):
    """Append-only or lock invariant would be broken (e.g. same-lot transfer, ledger row update)."""

    status_code = 409
