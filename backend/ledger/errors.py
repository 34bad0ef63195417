from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID


class LedgerError(Exception):
    """Base class for every rejection the ledger reports to a caller."""

    kind = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_payload(self) -> dict[str, Any]:
        return {
            "code": self.kind,
            "message": self.message,
            "details": [],
            "context": {key: _plain(value) for key, value in self.context.items()},
        }


def _plain(value: Any) -> Any:
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    return value


class ValidationError(LedgerError):
    kind = "VALIDATION_ERROR"
    status_code = 422


class NotFound(LedgerError):
    kind = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: UUID | str) -> None:
        super().__init__(f"{resource} not found: {resource_id}", resource=resource, resourceId=resource_id)


class Unauthorized(LedgerError):
    kind = "UNAUTHORIZED"
    status_code = 401


class Forbidden(LedgerError):
    kind = "FORBIDDEN"
    status_code = 403

    def __init__(self, resource: str, resource_id: UUID | str) -> None:
        super().__init__(f"you do not own this {resource}", resource=resource, resourceId=resource_id)


class InsufficientFunds(LedgerError):
    kind = "INSUFFICIENT_FUNDS"
    status_code = 400

    def __init__(self, account_id: UUID, current_balance: Decimal, requested_amount: Decimal) -> None:
        super().__init__(
            f"insufficient balance in account {account_id}: available {current_balance}, requested {requested_amount}",
            accountId=account_id,
            currentBalance=current_balance,
            requestedAmount=requested_amount,
        )
        self.account_id = account_id
        self.current_balance = current_balance
        self.requested_amount = requested_amount


class GoalConstraintViolation(LedgerError):
    kind = "GOAL_CONSTRAINT_VIOLATION"
    status_code = 400

    def __init__(self, message: str, goal_id: UUID, remaining_amount: Decimal) -> None:
        super().__init__(message, goalId=goal_id, remainingAmount=remaining_amount)
        self.goal_id = goal_id
        self.remaining_amount = remaining_amount


class Conflict(LedgerError):
    kind = "CONFLICT"
    status_code = 409


class PersistenceFailure(LedgerError):
    kind = "PERSISTENCE_FAILURE"
    status_code = 500
