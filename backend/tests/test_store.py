from uuid import uuid4

import pytest

from ledger.store import InMemoryStore


class Boom(Exception):
    pass


def test_rollback_undoes_only_touched_rows() -> None:
    store = InMemoryStore()
    kept, changed, dropped = uuid4(), uuid4(), uuid4()
    store.accounts[kept] = {"id": kept, "current_balance": 1}
    store.accounts[changed] = {"id": changed, "current_balance": 2}
    store.accounts[dropped] = {"id": dropped, "current_balance": 3}
    kept_row = store.accounts[kept]
    added = uuid4()

    with pytest.raises(Boom):
        with store.atomic():
            store.remember("accounts", changed)
            store.accounts[changed]["current_balance"] = 20
            store.remember("accounts", changed)
            store.accounts[changed]["current_balance"] = 200
            store.remember("accounts", dropped)
            del store.accounts[dropped]
            store.remember("accounts", added)
            store.accounts[added] = {"id": added, "current_balance": 4}
            raise Boom()

    assert store.accounts[changed]["current_balance"] == 2
    assert store.accounts[dropped]["current_balance"] == 3
    assert added not in store.accounts
    assert store.accounts[kept] is kept_row


def test_commit_keeps_writes_and_nested_blocks_join_the_outer_one() -> None:
    store = InMemoryStore()
    first, second = uuid4(), uuid4()

    with store.atomic():
        store.remember("users", first)
        store.users[first] = {"id": first}
    assert first in store.users

    with pytest.raises(Boom):
        with store.atomic():
            with store.atomic():
                store.remember("users", second)
                store.users[second] = {"id": second}
            raise Boom()

    assert second not in store.users
    assert first in store.users
