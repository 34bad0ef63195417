"""Ledger operations.

Every mutation follows the same path: lock the rows it reads, check
ownership, ask the engine for a plan, then write the entity, the new
balance(s) and one ledger-entry row per touched account inside the same
store transaction. Any exception before the block exits leaves the store
untouched.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import logging
from typing import Any, Callable
from uuid import UUID

from ..engine import (
    AccountState,
    BalanceChange,
    GoalState,
    Plan,
    ensure_owned,
    plan_allocate_to_goal,
    plan_create_expense,
    plan_create_income,
    plan_delete_expense,
    plan_delete_income,
    plan_transfer,
    plan_update_expense,
    plan_update_income,
)
from ..persistence import LedgerTransaction, Persistence
from ..schemas import (
    ExpenseCreate,
    ExpenseUpdate,
    GoalAllocationCreate,
    IncomeCreate,
    IncomeUpdate,
    TransferCreate,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntryPlanners:
    create: Callable[[AccountState, Decimal], Plan]
    update: Callable[[AccountState, Decimal, Decimal], Plan]
    delete: Callable[[AccountState, Decimal], Plan]


PLANNERS = {
    "expense": EntryPlanners(plan_create_expense, plan_update_expense, plan_delete_expense),
    "income": EntryPlanners(plan_create_income, plan_update_income, plan_delete_income),
}


@dataclass
class LedgerResult:
    entity: dict[str, Any] | None
    changes: list[BalanceChange]
    entries: list[dict[str, Any]] = field(default_factory=list)

    @property
    def overdrawn(self) -> bool:
        return any(change.overdrawn for change in self.changes)


def _edited(payload: ExpenseUpdate | IncomeUpdate, columns: dict[str, str]) -> dict[str, Any]:
    return {column: getattr(payload, name) for name, column in columns.items() if name in payload.model_fields_set}


def _lock_owned_account(tx: LedgerTransaction, user_id: UUID, account_id: UUID) -> AccountState:
    row = tx.lock_accounts([account_id]).get(account_id)
    return AccountState.from_row(ensure_owned(row, user_id, "account", account_id))


def _apply(
    tx: LedgerTransaction,
    user_id: UUID,
    plan: Plan,
    kinds: tuple[str, ...],
    reference_id: UUID,
) -> list[dict[str, Any]]:
    entries = []
    for change, kind in zip(plan.changes, kinds):
        if change.delta == 0:
            continue
        tx.set_account_balance(change.account_id, change.after)
        entries.append(
            tx.append_ledger_entry(
                {
                    "user_id": user_id,
                    "account_id": change.account_id,
                    "kind": kind,
                    "reference_id": reference_id,
                    "delta": change.delta,
                    "balance_after": change.after,
                }
            )
        )
    return entries


def _record(
    persistence: Persistence,
    user_id: UUID,
    kind: str,
    account_id: UUID,
    amount: Decimal,
    fields: dict[str, Any],
) -> LedgerResult:
    with persistence.transaction() as tx:
        account = _lock_owned_account(tx, user_id, account_id)
        plan = PLANNERS[kind].create(account, amount)
        entity = tx.insert_entry(kind, {"user_id": user_id, "account_id": account_id, "amount": amount, **fields})
        entries = _apply(tx, user_id, plan, (f"{kind}_recorded",), entity["id"])
    change = plan.changes[0]
    logger.info("%s recorded user=%s account=%s amount=%s balance=%s", kind, user_id, account_id, amount, change.after)
    return LedgerResult(entity, list(plan.changes), entries)


def _alter(
    persistence: Persistence,
    user_id: UUID,
    kind: str,
    entry_id: UUID,
    amount: Decimal | None,
    fields: dict[str, Any],
) -> LedgerResult:
    with persistence.transaction() as tx:
        entry = ensure_owned(tx.lock_entry(kind, entry_id), user_id, kind, entry_id)
        account = _lock_owned_account(tx, user_id, entry["account_id"])
        old_amount = Decimal(entry["amount"])
        new_amount = amount if amount is not None else old_amount
        plan = PLANNERS[kind].update(account, old_amount, new_amount)
        # only description is nullable; other explicit nulls leave the field as is
        changes = {key: value for key, value in fields.items() if value is not None or key == "description"}
        if amount is not None:
            changes["amount"] = amount
        entity = tx.update_entry(kind, entry_id, changes)
        entries = _apply(tx, user_id, plan, (f"{kind}_altered",), entry_id)
    change = plan.changes[0]
    logger.info(
        "%s altered user=%s entry=%s amount=%s->%s balance=%s",
        kind,
        user_id,
        entry_id,
        old_amount,
        new_amount,
        change.after,
    )
    return LedgerResult(entity, list(plan.changes), entries)


def _remove(persistence: Persistence, user_id: UUID, kind: str, entry_id: UUID) -> LedgerResult:
    with persistence.transaction() as tx:
        entry = ensure_owned(tx.lock_entry(kind, entry_id), user_id, kind, entry_id)
        account = _lock_owned_account(tx, user_id, entry["account_id"])
        plan = PLANNERS[kind].delete(account, Decimal(entry["amount"]))
        tx.delete_entry(kind, entry_id)
        entries = _apply(tx, user_id, plan, (f"{kind}_removed",), entry_id)
    change = plan.changes[0]
    if change.overdrawn:
        logger.warning("%s removed leaving account %s overdrawn at %s", kind, change.account_id, change.after)
    else:
        logger.info("%s removed user=%s entry=%s balance=%s", kind, user_id, entry_id, change.after)
    return LedgerResult(None, list(plan.changes), entries)


def record_expense(persistence: Persistence, user_id: UUID, payload: ExpenseCreate) -> LedgerResult:
    return _record(
        persistence,
        user_id,
        "expense",
        payload.accountId,
        payload.amount,
        {"occurred_at": payload.occurredAt, "category": payload.category, "description": payload.description},
    )


def alter_expense(persistence: Persistence, user_id: UUID, expense_id: UUID, payload: ExpenseUpdate) -> LedgerResult:
    return _alter(
        persistence,
        user_id,
        "expense",
        expense_id,
        payload.amount,
        _edited(payload, {"occurredAt": "occurred_at", "category": "category", "description": "description"}),
    )


def remove_expense(persistence: Persistence, user_id: UUID, expense_id: UUID) -> LedgerResult:
    return _remove(persistence, user_id, "expense", expense_id)


def record_income(persistence: Persistence, user_id: UUID, payload: IncomeCreate) -> LedgerResult:
    return _record(
        persistence,
        user_id,
        "income",
        payload.accountId,
        payload.amount,
        {"occurred_at": payload.occurredAt, "source": payload.source, "description": payload.description},
    )


def alter_income(persistence: Persistence, user_id: UUID, income_id: UUID, payload: IncomeUpdate) -> LedgerResult:
    return _alter(
        persistence,
        user_id,
        "income",
        income_id,
        payload.amount,
        _edited(payload, {"occurredAt": "occurred_at", "source": "source", "description": "description"}),
    )


def remove_income(persistence: Persistence, user_id: UUID, income_id: UUID) -> LedgerResult:
    return _remove(persistence, user_id, "income", income_id)


def transfer_funds(persistence: Persistence, user_id: UUID, payload: TransferCreate) -> LedgerResult:
    source_id, destination_id = payload.sourceAccountId, payload.destinationAccountId
    with persistence.transaction() as tx:
        rows = tx.lock_accounts([source_id, destination_id])
        source = AccountState.from_row(ensure_owned(rows.get(source_id), user_id, "account", source_id))
        destination = AccountState.from_row(ensure_owned(rows.get(destination_id), user_id, "account", destination_id))
        plan = plan_transfer(source, destination, payload.amount)
        transfer = tx.insert_transfer(
            {
                "user_id": user_id,
                "source_account_id": source_id,
                "destination_account_id": destination_id,
                "amount": payload.amount,
                "description": payload.description,
            }
        )
        entries = _apply(tx, user_id, plan, ("transfer_out", "transfer_in"), transfer["id"])
    logger.info(
        "transfer committed user=%s from=%s to=%s amount=%s",
        user_id,
        source_id,
        destination_id,
        payload.amount,
    )
    return LedgerResult(transfer, list(plan.changes), entries)


def allocate_to_goal(
    persistence: Persistence,
    user_id: UUID,
    goal_id: UUID,
    payload: GoalAllocationCreate,
) -> LedgerResult:
    with persistence.transaction() as tx:
        goal = GoalState.from_row(ensure_owned(tx.lock_goal(goal_id), user_id, "saving goal", goal_id))
        account = _lock_owned_account(tx, user_id, payload.accountId)
        plan = plan_allocate_to_goal(goal, account, payload.amount)
        goal_row = tx.set_goal_saved(goal_id, plan.goal.after, plan.goal.is_completed)
        entries = _apply(tx, user_id, plan, ("goal_allocation",), goal_id)
    logger.info(
        "goal allocation user=%s goal=%s account=%s amount=%s saved=%s completed=%s",
        user_id,
        goal_id,
        payload.accountId,
        payload.amount,
        plan.goal.after,
        plan.goal.is_completed,
    )
    return LedgerResult(goal_row, list(plan.changes), entries)


def total_balance(persistence: Persistence, user_id: UUID) -> tuple[Decimal, int]:
    accounts = persistence.list_accounts(user_id)
    return sum((Decimal(a["current_balance"]) for a in accounts), Decimal("0")), len(accounts)


def list_account_entries(persistence: Persistence, user_id: UUID, account_id: UUID) -> list[dict[str, Any]]:
    ensure_owned(persistence.get_account(account_id), user_id, "account", account_id)
    return persistence.list_ledger_entries(account_id)


def audit_account(persistence: Persistence, user_id: UUID, account_id: UUID) -> dict[str, Any]:
    """Replay the ledger entries of an account and compare with its stored balance."""
    account = ensure_owned(persistence.get_account(account_id), user_id, "account", account_id)
    entries = persistence.list_ledger_entries(account_id)
    initial = Decimal(account["initial_balance"])
    expected = initial + sum((Decimal(e["delta"]) for e in entries), Decimal("0"))
    actual = Decimal(account["current_balance"])
    if expected != actual:
        logger.warning("balance drift on account %s: expected %s, stored %s", account_id, expected, actual)
    return {
        "account_id": account_id,
        "initial_balance": initial,
        "expected_balance": expected,
        "current_balance": actual,
        "entry_count": len(entries),
        "consistent": expected == actual,
    }
