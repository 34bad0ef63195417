from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Iterable, Iterator
from uuid import UUID, uuid4

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .auth_utils import hash_password, verify_password
from .config import settings
from .engine import ensure_owned
from .errors import Conflict, PersistenceFailure
from .schemas import AccountCreate, SavingGoalCreate
from .store import InMemoryStore, store

logger = logging.getLogger(__name__)

ENTRY_TABLES = {"expense": "expenses", "income": "incomes"}
ENTRY_LABELS = {"expense": "category", "income": "source"}
ENTRY_COLUMNS = ("amount", "occurred_at", "description")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _entry_table(kind: str) -> str:
    try:
        return ENTRY_TABLES[kind]
    except KeyError:
        raise ValueError(f"unknown ledger entry kind: {kind}") from None


def _entry_fields(kind: str) -> tuple[str, ...]:
    return (*ENTRY_COLUMNS, ENTRY_LABELS[kind])


class LedgerTransaction:
    """Handle for one atomic unit of work against the ledger store.

    Rows returned by ``lock_*`` stay locked until the enclosing
    ``Persistence.transaction()`` block exits.
    """

    def lock_accounts(self, account_ids: Iterable[UUID]) -> dict[UUID, dict[str, Any]]:
        raise NotImplementedError

    def lock_entry(self, kind: str, entry_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def insert_entry(self, kind: str, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update_entry(self, kind: str, entry_id: UUID, changes: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def delete_entry(self, kind: str, entry_id: UUID) -> None:
        raise NotImplementedError

    def lock_goal(self, goal_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def set_goal_saved(self, goal_id: UUID, saved: Decimal, is_completed: bool) -> dict[str, Any]:
        raise NotImplementedError

    def set_account_balance(self, account_id: UUID, balance: Decimal) -> dict[str, Any]:
        raise NotImplementedError

    def insert_transfer(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def append_ledger_entry(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def count_account_references(self, account_id: UUID) -> int:
        raise NotImplementedError


class Persistence:
    def transaction(self) -> Iterator[LedgerTransaction]:
        raise NotImplementedError

    def register_user(self, email: str, password: str, name: str | None, initial_balance: Decimal) -> dict[str, Any]:
        raise NotImplementedError

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def create_account(self, user_id: UUID, payload: AccountCreate) -> dict[str, Any]:
        raise NotImplementedError

    def get_account(self, account_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_accounts(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def list_entries(self, kind: str, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_goal(self, user_id: UUID, payload: SavingGoalCreate) -> dict[str, Any]:
        raise NotImplementedError

    def list_goals(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def list_transfers(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def list_ledger_entries(self, account_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def delete_account(self, user_id: UUID, account_id: UUID) -> None:
        with self.transaction() as tx:
            locked = tx.lock_accounts([account_id])
            ensure_owned(locked.get(account_id), user_id, "account", account_id)
            references = tx.count_account_references(account_id)
            if references:
                raise Conflict(
                    f"account {account_id} is still referenced by {references} ledger records",
                    accountId=account_id,
                    references=references,
                )
            self._drop_account(tx, account_id)

    def _drop_account(self, tx: LedgerTransaction, account_id: UUID) -> None:
        raise NotImplementedError


class InMemoryLedgerTransaction(LedgerTransaction):
    def __init__(self, backing: InMemoryStore) -> None:
        self._store = backing

    def _entries(self, kind: str) -> dict[UUID, dict]:
        return getattr(self._store, _entry_table(kind))

    def lock_accounts(self, account_ids: Iterable[UUID]) -> dict[UUID, dict[str, Any]]:
        rows = {}
        for account_id in sorted(set(account_ids), key=str):
            row = self._store.accounts.get(account_id)
            if row is not None:
                rows[account_id] = dict(row)
        return rows

    def lock_entry(self, kind: str, entry_id: UUID) -> dict[str, Any] | None:
        row = self._entries(kind).get(entry_id)
        return dict(row) if row is not None else None

    def insert_entry(self, kind: str, row: dict[str, Any]) -> dict[str, Any]:
        now = _now()
        entity = {"id": uuid4(), **row, "created_at": now, "updated_at": now}
        self._store.remember(_entry_table(kind), entity["id"])
        self._entries(kind)[entity["id"]] = entity
        return dict(entity)

    def update_entry(self, kind: str, entry_id: UUID, changes: dict[str, Any]) -> dict[str, Any]:
        self._store.remember(_entry_table(kind), entry_id)
        row = self._entries(kind)[entry_id]
        row.update({k: v for k, v in changes.items() if k in _entry_fields(kind)})
        row["updated_at"] = _now()
        return dict(row)

    def delete_entry(self, kind: str, entry_id: UUID) -> None:
        self._store.remember(_entry_table(kind), entry_id)
        del self._entries(kind)[entry_id]

    def lock_goal(self, goal_id: UUID) -> dict[str, Any] | None:
        row = self._store.saving_goals.get(goal_id)
        return dict(row) if row is not None else None

    def set_goal_saved(self, goal_id: UUID, saved: Decimal, is_completed: bool) -> dict[str, Any]:
        self._store.remember("saving_goals", goal_id)
        row = self._store.saving_goals[goal_id]
        row["current_saved_amount"] = saved
        row["is_completed"] = is_completed
        row["updated_at"] = _now()
        return dict(row)

    def set_account_balance(self, account_id: UUID, balance: Decimal) -> dict[str, Any]:
        self._store.remember("accounts", account_id)
        row = self._store.accounts[account_id]
        row["current_balance"] = balance
        row["updated_at"] = _now()
        return dict(row)

    def insert_transfer(self, row: dict[str, Any]) -> dict[str, Any]:
        entity = {"id": uuid4(), **row, "created_at": _now()}
        self._store.remember("transfers", entity["id"])
        self._store.transfers[entity["id"]] = entity
        return dict(entity)

    def append_ledger_entry(self, row: dict[str, Any]) -> dict[str, Any]:
        entity = {"id": uuid4(), **row, "created_at": _now()}
        self._store.remember("ledger_entries", entity["id"])
        self._store.ledger_entries[entity["id"]] = entity
        return dict(entity)

    def count_account_references(self, account_id: UUID) -> int:
        count = sum(1 for e in self._store.expenses.values() if e["account_id"] == account_id)
        count += sum(1 for e in self._store.incomes.values() if e["account_id"] == account_id)
        count += sum(
            1
            for t in self._store.transfers.values()
            if account_id in (t["source_account_id"], t["destination_account_id"])
        )
        count += sum(1 for e in self._store.ledger_entries.values() if e["account_id"] == account_id)
        return count


class InMemoryPersistence(Persistence):
    """Process-local store.

    Writers and readers share ``store.lock``, so a reader never observes a
    transaction that has not finished.
    """

    def __init__(self, backing: InMemoryStore | None = None) -> None:
        self.store = backing or store

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        with self.store.atomic():
            yield InMemoryLedgerTransaction(self.store)

    def _new_account(self, user_id: UUID, name: str, account_type: str, initial_balance: Decimal) -> dict[str, Any]:
        now = _now()
        row = {
            "id": uuid4(),
            "user_id": user_id,
            "name": name,
            "account_type": account_type,
            "initial_balance": initial_balance,
            "current_balance": initial_balance,
            "created_at": now,
            "updated_at": now,
        }
        self.store.remember("accounts", row["id"])
        self.store.accounts[row["id"]] = row
        return row

    def register_user(self, email: str, password: str, name: str | None, initial_balance: Decimal) -> dict[str, Any]:
        password_hash = hash_password(password)
        with self.transaction():
            for row in self.store.users.values():
                if row["email"] == email:
                    raise Conflict("email already registered", email=email)
            user_id = uuid4()
            user_row = {"id": user_id, "email": email, "name": name, "created_at": _now()}
            self.store.remember("users", user_id)
            self.store.users[user_id] = user_row
            self.store.remember("user_credentials", user_id)
            self.store.user_credentials[user_id] = password_hash
            self._new_account(user_id, settings.default_account_name, settings.default_account_type, initial_balance)
            return dict(user_row)

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        with self.store.lock:
            match = next((dict(row) for row in self.store.users.values() if row["email"] == email), None)
            stored_hash = self.store.user_credentials.get(match["id"]) if match else None
        if match is None or not stored_hash or not verify_password(password, stored_hash):
            return None
        return match

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        with self.store.lock:
            row = self.store.users.get(user_id)
            return dict(row) if row is not None else None

    def create_account(self, user_id: UUID, payload: AccountCreate) -> dict[str, Any]:
        with self.transaction():
            return dict(self._new_account(user_id, payload.name, payload.accountType, payload.initialBalance))

    def get_account(self, account_id: UUID) -> dict[str, Any] | None:
        with self.store.lock:
            row = self.store.accounts.get(account_id)
            return dict(row) if row is not None else None

    def list_accounts(self, user_id: UUID) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [dict(a) for a in self.store.accounts.values() if a["user_id"] == user_id]
        return sorted(rows, key=lambda a: a["created_at"])

    def list_entries(self, kind: str, user_id: UUID) -> list[dict[str, Any]]:
        with self.store.lock:
            table = getattr(self.store, _entry_table(kind))
            rows = [dict(e) for e in table.values() if e["user_id"] == user_id]
        return sorted(rows, key=lambda e: e["occurred_at"], reverse=True)

    def create_goal(self, user_id: UUID, payload: SavingGoalCreate) -> dict[str, Any]:
        now = _now()
        row = {
            "id": uuid4(),
            "user_id": user_id,
            "name": payload.name,
            "target_amount": payload.targetAmount,
            "current_saved_amount": Decimal("0.00"),
            "is_completed": False,
            "created_at": now,
            "updated_at": now,
        }
        with self.transaction():
            self.store.remember("saving_goals", row["id"])
            self.store.saving_goals[row["id"]] = row
            return dict(row)

    def list_goals(self, user_id: UUID) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [dict(g) for g in self.store.saving_goals.values() if g["user_id"] == user_id]
        return sorted(rows, key=lambda g: g["created_at"])

    def list_transfers(self, user_id: UUID) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [dict(t) for t in self.store.transfers.values() if t["user_id"] == user_id]
        return sorted(rows, key=lambda t: t["created_at"], reverse=True)

    def list_ledger_entries(self, account_id: UUID) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [dict(e) for e in self.store.ledger_entries.values() if e["account_id"] == account_id]
        return sorted(rows, key=lambda e: e["created_at"])

    def _drop_account(self, tx: LedgerTransaction, account_id: UUID) -> None:
        self.store.remember("accounts", account_id)
        del self.store.accounts[account_id]


ACCOUNT_COLUMNS = "id, user_id, name, account_type, initial_balance, current_balance, created_at, updated_at"
GOAL_COLUMNS = "id, user_id, name, target_amount, current_saved_amount, is_completed, created_at, updated_at"
TRANSFER_COLUMNS = "id, user_id, source_account_id, destination_account_id, amount, description, created_at"
LEDGER_ENTRY_COLUMNS = "id, user_id, account_id, kind, reference_id, delta, balance_after, created_at"


def _entry_columns(kind: str) -> str:
    return f"id, user_id, account_id, amount, occurred_at, {ENTRY_LABELS[kind]}, description, created_at, updated_at"


class PostgresLedgerTransaction(LedgerTransaction):
    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    def _run(self, sql: Any, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        statement = text(sql) if isinstance(sql, str) else sql
        result = self.conn.execute(statement, params or {})
        if result.returns_rows:
            return [dict(row._mapping) for row in result.fetchall()]
        return []

    def lock_accounts(self, account_ids: Iterable[UUID]) -> dict[UUID, dict[str, Any]]:
        ids = sorted(set(account_ids), key=str)
        if not ids:
            return {}
        statement = text(
            f"select {ACCOUNT_COLUMNS} from accounts where id in :ids order by id for update"
        ).bindparams(bindparam("ids", expanding=True))
        return {row["id"]: row for row in self._run(statement, {"ids": ids})}

    def lock_entry(self, kind: str, entry_id: UUID) -> dict[str, Any] | None:
        rows = self._run(
            f"select {_entry_columns(kind)} from {_entry_table(kind)} where id = :id for update",
            {"id": entry_id},
        )
        return rows[0] if rows else None

    def insert_entry(self, kind: str, row: dict[str, Any]) -> dict[str, Any]:
        label = ENTRY_LABELS[kind]
        return self._run(
            f"""
            insert into {_entry_table(kind)} (id, user_id, account_id, amount, occurred_at, {label}, description)
            values (:id, :user_id, :account_id, :amount, :occurred_at, :{label}, :description)
            returning {_entry_columns(kind)}
            """,
            {"id": uuid4(), "description": None, **row},
        )[0]

    def update_entry(self, kind: str, entry_id: UUID, changes: dict[str, Any]) -> dict[str, Any]:
        fields = [k for k in _entry_fields(kind) if k in changes]
        assignments = ", ".join(f"{field} = :{field}" for field in fields)
        prefix = f"{assignments}, " if assignments else ""
        return self._run(
            f"""
            update {_entry_table(kind)}
            set {prefix}updated_at = now()
            where id = :id
            returning {_entry_columns(kind)}
            """,
            {"id": entry_id, **{field: changes[field] for field in fields}},
        )[0]

    def delete_entry(self, kind: str, entry_id: UUID) -> None:
        self._run(f"delete from {_entry_table(kind)} where id = :id", {"id": entry_id})

    def lock_goal(self, goal_id: UUID) -> dict[str, Any] | None:
        rows = self._run(f"select {GOAL_COLUMNS} from saving_goals where id = :id for update", {"id": goal_id})
        return rows[0] if rows else None

    def set_goal_saved(self, goal_id: UUID, saved: Decimal, is_completed: bool) -> dict[str, Any]:
        return self._run(
            f"""
            update saving_goals
            set current_saved_amount = :saved, is_completed = :is_completed, updated_at = now()
            where id = :id
            returning {GOAL_COLUMNS}
            """,
            {"id": goal_id, "saved": saved, "is_completed": is_completed},
        )[0]

    def set_account_balance(self, account_id: UUID, balance: Decimal) -> dict[str, Any]:
        return self._run(
            f"""
            update accounts
            set current_balance = :balance, updated_at = now()
            where id = :id
            returning {ACCOUNT_COLUMNS}
            """,
            {"id": account_id, "balance": balance},
        )[0]

    def insert_transfer(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._run(
            f"""
            insert into transfers (id, user_id, source_account_id, destination_account_id, amount, description)
            values (:id, :user_id, :source_account_id, :destination_account_id, :amount, :description)
            returning {TRANSFER_COLUMNS}
            """,
            {"id": uuid4(), "description": None, **row},
        )[0]

    def append_ledger_entry(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._run(
            f"""
            insert into ledger_entries (id, user_id, account_id, kind, reference_id, delta, balance_after)
            values (:id, :user_id, :account_id, :kind, :reference_id, :delta, :balance_after)
            returning {LEDGER_ENTRY_COLUMNS}
            """,
            {"id": uuid4(), **row},
        )[0]

    def count_account_references(self, account_id: UUID) -> int:
        rows = self._run(
            """
            select
              (select count(*) from expenses where account_id = :id)
              + (select count(*) from incomes where account_id = :id)
              + (select count(*) from transfers where source_account_id = :id or destination_account_id = :id)
              + (select count(*) from ledger_entries where account_id = :id) as refs
            """,
            {"id": account_id},
        )
        return int(rows[0]["refs"])


class PostgresPersistence(Persistence):
    def __init__(self, database_url: str, lock_timeout_ms: int = 5000, engine: Engine | None = None) -> None:
        self.engine: Engine = engine or create_engine(database_url, future=True, pool_pre_ping=True)
        self.lock_timeout_ms = lock_timeout_ms

    def _run(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(sql), params or {})
                if result.returns_rows:
                    return [dict(row._mapping) for row in result.fetchall()]
                return []
        except SQLAlchemyError as exc:
            logger.error("postgres query failed: %s", exc.__class__.__name__)
            raise PersistenceFailure(f"postgres error: {exc.__class__.__name__}") from exc

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        try:
            with self.engine.begin() as conn:
                conn.execute(text(f"set local lock_timeout = '{int(self.lock_timeout_ms)}ms'"))
                yield PostgresLedgerTransaction(conn)
        except IntegrityError as exc:
            logger.error("postgres transaction rolled back: %s", exc.__class__.__name__)
            raise Conflict(f"constraint violated: {exc.__class__.__name__}") from exc
        except SQLAlchemyError as exc:
            logger.error("postgres transaction rolled back: %s", exc.__class__.__name__)
            raise PersistenceFailure(f"postgres error: {exc.__class__.__name__}") from exc

    def register_user(self, email: str, password: str, name: str | None, initial_balance: Decimal) -> dict[str, Any]:
        with self.transaction() as tx:
            if tx._run("select 1 as ok from users where email = :email limit 1", {"email": email}):
                raise Conflict("email already registered", email=email)
            user = tx._run(
                """
                insert into users (id, email, name, password_hash)
                values (:id, :email, :name, :password_hash)
                returning id, email, name, created_at
                """,
                {"id": uuid4(), "email": email, "name": name, "password_hash": hash_password(password)},
            )[0]
            tx._run(
                """
                insert into accounts (id, user_id, name, account_type, initial_balance, current_balance)
                values (:id, :user_id, :name, :account_type, :balance, :balance)
                """,
                {
                    "id": uuid4(),
                    "user_id": user["id"],
                    "name": settings.default_account_name,
                    "account_type": settings.default_account_type,
                    "balance": initial_balance,
                },
            )
            return user

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        rows = self._run(
            "select id, email, name, password_hash, created_at from users where email = :email limit 1",
            {"email": email},
        )
        if not rows:
            return None
        row = rows[0]
        stored_hash = row.pop("password_hash", None)
        if not stored_hash or not verify_password(password, stored_hash):
            return None
        return row

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        rows = self._run("select id, email, name, created_at from users where id = :id limit 1", {"id": user_id})
        return rows[0] if rows else None

    def create_account(self, user_id: UUID, payload: AccountCreate) -> dict[str, Any]:
        return self._run(
            f"""
            insert into accounts (id, user_id, name, account_type, initial_balance, current_balance)
            values (:id, :user_id, :name, :account_type, :balance, :balance)
            returning {ACCOUNT_COLUMNS}
            """,
            {
                "id": uuid4(),
                "user_id": user_id,
                "name": payload.name,
                "account_type": payload.accountType,
                "balance": payload.initialBalance,
            },
        )[0]

    def get_account(self, account_id: UUID) -> dict[str, Any] | None:
        rows = self._run(f"select {ACCOUNT_COLUMNS} from accounts where id = :id limit 1", {"id": account_id})
        return rows[0] if rows else None

    def list_accounts(self, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {ACCOUNT_COLUMNS} from accounts where user_id = :user_id order by created_at asc",
            {"user_id": user_id},
        )

    def list_entries(self, kind: str, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"""
            select {_entry_columns(kind)}
            from {_entry_table(kind)}
            where user_id = :user_id
            order by occurred_at desc
            """,
            {"user_id": user_id},
        )

    def create_goal(self, user_id: UUID, payload: SavingGoalCreate) -> dict[str, Any]:
        return self._run(
            f"""
            insert into saving_goals (id, user_id, name, target_amount, current_saved_amount, is_completed)
            values (:id, :user_id, :name, :target_amount, 0, false)
            returning {GOAL_COLUMNS}
            """,
            {"id": uuid4(), "user_id": user_id, "name": payload.name, "target_amount": payload.targetAmount},
        )[0]

    def list_goals(self, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {GOAL_COLUMNS} from saving_goals where user_id = :user_id order by created_at asc",
            {"user_id": user_id},
        )

    def list_transfers(self, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {TRANSFER_COLUMNS} from transfers where user_id = :user_id order by created_at desc",
            {"user_id": user_id},
        )

    def list_ledger_entries(self, account_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {LEDGER_ENTRY_COLUMNS} from ledger_entries where account_id = :account_id order by created_at asc",
            {"account_id": account_id},
        )

    def _drop_account(self, tx: PostgresLedgerTransaction, account_id: UUID) -> None:  # type: ignore[override]
        tx._run("delete from accounts where id = :id", {"id": account_id})


def get_persistence() -> Persistence:
    if settings.storage_backend == "postgres":
        return PostgresPersistence(settings.database_url, settings.db_lock_timeout_ms)
    return InMemoryPersistence()
