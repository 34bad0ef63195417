from contextlib import contextmanager
import threading
from typing import Any, Iterator
from uuid import UUID

_MISSING = object()


class InMemoryStore:
    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._undo: list[tuple[str, Any, Any]] | None = None
        self.reset()

    def reset(self) -> None:
        with self.lock:
            self.users: dict[UUID, dict] = {}
            self.user_credentials: dict[UUID, str] = {}
            self.accounts: dict[UUID, dict] = {}
            self.expenses: dict[UUID, dict] = {}
            self.incomes: dict[UUID, dict] = {}
            self.saving_goals: dict[UUID, dict] = {}
            self.transfers: dict[UUID, dict] = {}
            self.ledger_entries: dict[UUID, dict] = {}

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Hold the store lock; undo every remembered row if the block raises.

        Nested blocks join the outermost one.
        """
        with self.lock:
            if self._undo is not None:
                yield
                return
            self._undo = []
            try:
                yield
            except BaseException:
                self._rollback()
                raise
            finally:
                self._undo = None

    def remember(self, table: str, key: Any) -> None:
        """Record the current state of one row before it is written."""
        if self._undo is None:
            return
        previous = getattr(self, table).get(key, _MISSING)
        self._undo.append((table, key, dict(previous) if isinstance(previous, dict) else previous))

    def _rollback(self) -> None:
        for table, key, previous in reversed(self._undo or []):
            rows = getattr(self, table)
            if previous is _MISSING:
                rows.pop(key, None)
            else:
                rows[key] = previous


store = InMemoryStore()
