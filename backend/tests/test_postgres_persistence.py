from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from ledger.errors import Conflict, InsufficientFunds, PersistenceFailure
from ledger.persistence import PostgresPersistence
from ledger.schemas import ExpenseCreate
from ledger.services import ledger


class FakeRow:
    def __init__(self, mapping: dict) -> None:
        self._mapping = mapping


class FakeResult:
    def __init__(self, rows) -> None:
        self._rows = rows
        self.returns_rows = rows is not None

    def fetchall(self) -> list[FakeRow]:
        return [FakeRow(row) for row in self._rows]


class FakeConnection:
    def __init__(self, responses=None, fail_with=None) -> None:
        self.responses = list(responses or [])
        self.fail_with = fail_with
        self.executed: list[tuple[str, dict]] = []

    def execute(self, statement, params=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.executed.append((" ".join(str(statement).split()).lower(), params or {}))
        return FakeResult(self.responses.pop(0) if self.responses else None)


class FakeEngine:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.committed = False
        self.rolled_back = False

    @contextmanager
    def begin(self):
        try:
            yield self.conn
        except BaseException:
            self.rolled_back = True
            raise
        self.committed = True


def _account_row(user_id, balance: str) -> dict:
    now = datetime.now(timezone.utc)
    return {
        "id": uuid4(),
        "user_id": user_id,
        "name": "Main Account",
        "account_type": "General",
        "initial_balance": Decimal(balance),
        "current_balance": Decimal(balance),
        "created_at": now,
        "updated_at": now,
    }


def test_transaction_sets_lock_timeout_and_locks_rows_in_order() -> None:
    user_id = uuid4()
    first, second = _account_row(user_id, "10"), _account_row(user_id, "20")
    conn = FakeConnection(responses=[None, [first, second]])
    engine = FakeEngine(conn)
    persistence = PostgresPersistence("postgresql://unused", lock_timeout_ms=750, engine=engine)

    with persistence.transaction() as tx:
        rows = tx.lock_accounts([second["id"], first["id"], second["id"]])

    assert set(rows) == {first["id"], second["id"]}
    assert conn.executed[0][0] == "set local lock_timeout = '750ms'"
    lock_sql, lock_params = conn.executed[1]
    assert "for update" in lock_sql
    assert lock_params["ids"] == sorted({first["id"], second["id"]}, key=str)
    assert engine.committed is True


def test_rejected_expense_rolls_back_without_writes() -> None:
    user_id = uuid4()
    account = _account_row(user_id, "10.00")
    conn = FakeConnection(responses=[None, [account]])
    engine = FakeEngine(conn)
    persistence = PostgresPersistence("postgresql://unused", engine=engine)

    payload = ExpenseCreate(
        accountId=account["id"],
        amount=Decimal("10.01"),
        occurredAt=datetime.now(timezone.utc),
        category="food",
    )
    with pytest.raises(InsufficientFunds):
        ledger.record_expense(persistence, user_id, payload)

    assert engine.rolled_back is True
    assert not any(sql.startswith(("insert", "update")) for sql, _ in conn.executed)


def test_driver_errors_become_persistence_failures() -> None:
    failing = FakeConnection(fail_with=OperationalError("select 1", {}, Exception("connection refused")))
    persistence = PostgresPersistence("postgresql://unused", engine=FakeEngine(failing))
    with pytest.raises(PersistenceFailure):
        persistence.list_accounts(uuid4())
    with pytest.raises(PersistenceFailure):
        with persistence.transaction():
            pass


def test_integrity_errors_become_conflicts() -> None:
    failing = FakeConnection(fail_with=IntegrityError("insert", {}, Exception("duplicate key")))
    persistence = PostgresPersistence("postgresql://unused", engine=FakeEngine(failing))
    with pytest.raises(Conflict):
        with persistence.transaction():
            pass


def test_register_user_rejects_existing_email() -> None:
    conn = FakeConnection(responses=[None, [{"ok": 1}]])
    engine = FakeEngine(conn)
    persistence = PostgresPersistence("postgresql://unused", engine=engine)
    with pytest.raises(Conflict):
        persistence.register_user("taken@example.com", "Secret123!", None, Decimal("0"))
    assert engine.rolled_back is True
    assert len(conn.executed) == 2
