"""Balance rules for every ledger mutation.

Functions here do no I/O. Each ``plan_*`` call either returns a ``Plan``
describing the new balance of every touched account (and goal), or raises a
``LedgerError`` subclass before anything is written.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from .errors import Forbidden, GoalConstraintViolation, InsufficientFunds, NotFound, ValidationError

ZERO = Decimal("0")


@dataclass(frozen=True)
class AccountState:
    id: UUID
    user_id: UUID
    name: str
    current_balance: Decimal

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AccountState":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            current_balance=Decimal(row["current_balance"]),
        )


@dataclass(frozen=True)
class GoalState:
    id: UUID
    user_id: UUID
    name: str
    target_amount: Decimal
    current_saved_amount: Decimal

    @property
    def is_completed(self) -> bool:
        return self.current_saved_amount >= self.target_amount

    @property
    def remaining(self) -> Decimal:
        return self.target_amount - self.current_saved_amount

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "GoalState":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            target_amount=Decimal(row["target_amount"]),
            current_saved_amount=Decimal(row["current_saved_amount"]),
        )


@dataclass(frozen=True)
class BalanceChange:
    account_id: UUID
    before: Decimal
    after: Decimal

    @property
    def delta(self) -> Decimal:
        return self.after - self.before

    @property
    def overdrawn(self) -> bool:
        return self.after < ZERO


@dataclass(frozen=True)
class GoalChange:
    goal_id: UUID
    before: Decimal
    after: Decimal
    target_amount: Decimal

    @property
    def is_completed(self) -> bool:
        return self.after >= self.target_amount


@dataclass(frozen=True)
class Plan:
    changes: tuple[BalanceChange, ...]
    goal: GoalChange | None = None

    def change_for(self, account_id: UUID) -> BalanceChange:
        for change in self.changes:
            if change.account_id == account_id:
                return change
        raise KeyError(account_id)


def _single(account: AccountState, after: Decimal) -> Plan:
    return Plan(changes=(BalanceChange(account.id, account.current_balance, after),))


def _require_positive(amount: Decimal, field: str = "amount") -> None:
    if amount <= ZERO:
        raise ValidationError(f"{field} must be a positive number", field=field, value=amount)


def _require_funds(account: AccountState, needed: Decimal) -> None:
    if account.current_balance < needed:
        raise InsufficientFunds(account.id, account.current_balance, needed)


def ensure_found(row: Mapping[str, Any] | None, resource: str, resource_id: UUID) -> Mapping[str, Any]:
    if row is None:
        raise NotFound(resource, resource_id)
    return row


def ensure_owned(row: Mapping[str, Any] | None, user_id: UUID, resource: str, resource_id: UUID) -> Mapping[str, Any]:
    found = ensure_found(row, resource, resource_id)
    if found["user_id"] != user_id:
        raise Forbidden(resource, resource_id)
    return found


def plan_create_expense(account: AccountState, amount: Decimal) -> Plan:
    _require_positive(amount)
    _require_funds(account, amount)
    return _single(account, account.current_balance - amount)


def plan_update_expense(account: AccountState, old_amount: Decimal, new_amount: Decimal) -> Plan:
    _require_positive(new_amount)
    diff = new_amount - old_amount
    # a decrease only releases funds
    if diff > ZERO and account.current_balance - diff < ZERO:
        raise InsufficientFunds(account.id, account.current_balance, diff)
    return _single(account, account.current_balance - diff)


def plan_delete_expense(account: AccountState, amount: Decimal) -> Plan:
    return _single(account, account.current_balance + amount)


def plan_create_income(account: AccountState, amount: Decimal) -> Plan:
    _require_positive(amount)
    return _single(account, account.current_balance + amount)


def plan_update_income(account: AccountState, old_amount: Decimal, new_amount: Decimal) -> Plan:
    _require_positive(new_amount)
    return _single(account, account.current_balance + (new_amount - old_amount))


def plan_delete_income(account: AccountState, amount: Decimal) -> Plan:
    """Reverse an income.

    The result may be negative when the credited funds were already spent;
    callers read ``BalanceChange.overdrawn`` and report it.
    """
    return _single(account, account.current_balance - amount)


def plan_transfer(source: AccountState, destination: AccountState, amount: Decimal) -> Plan:
    _require_positive(amount)
    if source.id == destination.id:
        raise ValidationError(
            "source and destination accounts cannot be the same",
            field="destinationAccountId",
            value=destination.id,
        )
    _require_funds(source, amount)
    return Plan(
        changes=(
            BalanceChange(source.id, source.current_balance, source.current_balance - amount),
            BalanceChange(destination.id, destination.current_balance, destination.current_balance + amount),
        )
    )


def plan_allocate_to_goal(goal: GoalState, source: AccountState, amount: Decimal) -> Plan:
    _require_positive(amount)
    if goal.is_completed:
        raise GoalConstraintViolation(
            f"saving goal '{goal.name}' is already completed",
            goal_id=goal.id,
            remaining_amount=max(goal.remaining, ZERO),
        )
    if goal.current_saved_amount + amount > goal.target_amount:
        raise GoalConstraintViolation(
            f"allocation exceeds the remaining target for '{goal.name}': remaining {goal.remaining}",
            goal_id=goal.id,
            remaining_amount=goal.remaining,
        )
    _require_funds(source, amount)
    return Plan(
        changes=(BalanceChange(source.id, source.current_balance, source.current_balance - amount),),
        goal=GoalChange(
            goal_id=goal.id,
            before=goal.current_saved_amount,
            after=goal.current_saved_amount + amount,
            target_amount=goal.target_amount,
        ),
    )
