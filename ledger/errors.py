"""
Error types for the reconciliation engine.

Only conditions that stop a run (or a client within a run) are exceptions.
Malformed consumption records, unknown item codes, code collisions and
over-allocations are reported as values on the extraction/reconciliation
results; per-item write failures are tallied by `ledger.reconciler.apply`.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FundingError(Exception):
    """Base exception for engine errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class StoreUnavailableError(FundingError):
    """The backing store cannot be reached; aborts the whole run."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=503)


class ClientNotFoundError(FundingError):
    def __init__(self, client_id: int):
        super().__init__(f"Client {client_id} not found", {"client_id": client_id}, status_code=404)


class NoActivePlanError(FundingError):
    def __init__(self, client_id: int):
        super().__init__(
            f"No active funding plan for client {client_id}",
            {"client_id": client_id},
            status_code=404,
        )


class MultipleActivePlansError(FundingError):
    """More than one active plan exists for a client."""

    def __init__(self, client_id: int, plan_ids: list[int]):
        super().__init__(
            f"Client {client_id} has {len(plan_ids)} active funding plans",
            {"client_id": client_id, "plan_ids": plan_ids},
            status_code=409,
        )
