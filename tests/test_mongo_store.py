from __future__ import annotations

from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure

from generation_credits.db.base import BalanceWrite, StoreConflict, StoreUnavailable
from generation_credits.db.mongo import MongoLedgerStore
from generation_credits.errors import AccountExists
from generation_credits.models.ledger import LedgerEntry, LedgerEventType
from generation_credits.models.reservation import Reservation, ReservationState
from generation_credits.models.transaction import Transaction, TransactionKind
from generation_credits.models.user import UserAccount


def _matches(doc, query) -> bool:
    return all(doc.get(key) == value for key, value in query.items())


class FakeCollection:
    """The slice of motor's collection API the store uses, kept in a dict."""

    def __init__(self) -> None:
        self.docs = {}
        self.indexes = []

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))

    async def find_one(self, query, session=None):
        for doc in self.docs.values():
            if _matches(doc, query):
                return dict(doc)
        return None

    async def find_one_and_update(self, query, update, return_document=None, session=None):
        for doc in self.docs.values():
            if _matches(doc, query):
                doc.update(update.get("$set", {}))
                for key, step in update.get("$inc", {}).items():
                    doc[key] = doc.get(key, 0) + step
                return dict(doc)
        return None

    async def insert_one(self, doc, session=None):
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("E11000 duplicate key", code=11000)
        self.docs[doc["_id"]] = dict(doc)

    async def insert_many(self, docs, session=None):
        for doc in docs:
            await self.insert_one(doc, session=session)

    async def replace_one(self, query, doc, session=None):
        for key, stored in self.docs.items():
            if _matches(stored, query):
                self.docs[key] = dict(doc)
                return SimpleNamespace(matched_count=1)
        return SimpleNamespace(matched_count=0)


class FakeClient:
    """Sessions whose transactions commit, abort, or fail at commit time."""

    def __init__(self) -> None:
        self.commit_error = None
        self.committed = 0
        self.aborted = 0

    async def start_session(self):
        return FakeSession(self)


class FakeSession:
    def __init__(self, client: FakeClient) -> None:
        self.client = client

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @asynccontextmanager
    async def start_transaction(self):
        try:
            yield
        except BaseException:
            self.client.aborted += 1
            raise
        if self.client.commit_error is not None:
            raise self.client.commit_error
        self.client.committed += 1


class FakeDatabase:
    def __init__(self) -> None:
        self.client = FakeClient()
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def mongo_store(database) -> MongoLedgerStore:
    return MongoLedgerStore(database)


def _tx(
    user_id: str,
    amount: int,
    balance_after: int,
    kind: TransactionKind = TransactionKind.RESERVE,
    **kwargs,
) -> Transaction:
    return Transaction(
        id=f"txn_{user_id}_{balance_after}",
        user_id=user_id,
        kind=kind,
        amount=amount,
        balance_after=balance_after,
        **kwargs,
    )


def test_prepare_insert_mirrors_id():
    reservation = Reservation(id="rsv_1", user_id="user-1", amount=70)

    doc = MongoLedgerStore._prepare_insert(reservation)

    assert doc["_id"] == "rsv_1"
    assert doc["state"] == ReservationState.CREATED
    assert "finalized_at" not in doc


def test_prepare_insert_assigns_missing_id():
    entry = LedgerEntry(event_type=LedgerEventType.SYSTEM, message="sweep")

    doc = MongoLedgerStore._prepare_insert(entry)

    assert entry.id
    assert doc["_id"] == entry.id == doc["id"]


def test_decode_round_trips_stored_document():
    doc = {"_id": "rsv_2", "user_id": "user-1", "amount": 30, "state": "ROLLED_BACK"}

    reservation = MongoLedgerStore._decode(Reservation, doc)

    assert reservation.id == "rsv_2"
    assert reservation.state is ReservationState.ROLLED_BACK
    assert MongoLedgerStore._decode(Reservation, None) is None


@pytest.mark.asyncio
async def test_apply_bumps_version_and_records_reservation(mongo_store, database):
    await mongo_store.add_user(UserAccount(id="user-1", balance=100))
    reservation = Reservation(id="rsv_1", user_id="user-1", amount=70)

    account = await mongo_store.apply(
        BalanceWrite(
            user_id="user-1",
            expected_version=0,
            new_balance=30,
            transactions=[_tx("user-1", -70, 30, reservation_id="rsv_1")],
            reservation=reservation,
        )
    )

    assert (account.balance, account.version) == (30, 1)
    assert database.client.committed == 1
    assert (await mongo_store.get_reservation("rsv_1")).state is ReservationState.CREATED
    assert [t.balance_after for t in database[Transaction.collection_name].docs.values()] == [30]


@pytest.mark.asyncio
async def test_apply_with_stale_version_conflicts(mongo_store, database):
    await mongo_store.add_user(UserAccount(id="user-1", balance=100, version=3))

    with pytest.raises(StoreConflict):
        await mongo_store.apply(
            BalanceWrite(
                user_id="user-1",
                expected_version=2,
                new_balance=30,
                transactions=[_tx("user-1", -70, 30)],
            )
        )

    assert database.client.aborted == 1
    assert (await mongo_store.get_user("user-1")).balance == 100
    assert database[Transaction.collection_name].docs == {}


@pytest.mark.asyncio
async def test_finalize_requires_expected_reservation_state(mongo_store, database):
    await mongo_store.add_user(UserAccount(id="user-1", balance=30, version=1))
    committed = Reservation(
        id="rsv_1", user_id="user-1", amount=70, state=ReservationState.COMMITTED
    )
    await database[Reservation.collection_name].insert_one(
        MongoLedgerStore._prepare_insert(committed)
    )
    rolled_back = committed.model_copy(update={"state": ReservationState.ROLLED_BACK})

    with pytest.raises(StoreConflict):
        await mongo_store.apply(
            BalanceWrite(
                user_id="user-1",
                expected_version=1,
                new_balance=100,
                transactions=[_tx("user-1", 70, 100, kind=TransactionKind.ROLLBACK)],
                reservation=rolled_back,
                expected_reservation_state=ReservationState.CREATED,
            )
        )

    assert database.client.aborted == 1
    assert (await mongo_store.get_reservation("rsv_1")).state is ReservationState.COMMITTED
    assert database[Transaction.collection_name].docs == {}


@pytest.mark.asyncio
async def test_duplicate_transaction_insert_conflicts(mongo_store, database):
    await mongo_store.add_user(UserAccount(id="user-1", balance=0))
    tx = _tx("user-1", 20, 20, kind=TransactionKind.REFUND, external_ref="evt_1")
    await database[Transaction.collection_name].insert_one(MongoLedgerStore._prepare_insert(tx))

    with pytest.raises(StoreConflict):
        await mongo_store.apply(
            BalanceWrite(user_id="user-1", expected_version=0, new_balance=20, transactions=[tx])
        )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, expected",
    [
        (
            OperationFailure(
                "write conflict",
                code=112,
                details={"errorLabels": ["TransientTransactionError"]},
            ),
            StoreConflict,
        ),
        (
            OperationFailure(
                "commit outcome unknown",
                code=50,
                details={"errorLabels": ["UnknownTransactionCommitResult"]},
            ),
            StoreUnavailable,
        ),
        (ConnectionFailure("connection reset"), StoreUnavailable),
    ],
)
async def test_commit_errors_map_to_transient_store_errors(mongo_store, database, error, expected):
    await mongo_store.add_user(UserAccount(id="user-1", balance=100))
    database.client.commit_error = error

    with pytest.raises(expected) as exc_info:
        await mongo_store.apply(
            BalanceWrite(
                user_id="user-1",
                expected_version=0,
                new_balance=30,
                transactions=[_tx("user-1", -70, 30)],
            )
        )

    assert exc_info.value.__cause__ is error


@pytest.mark.asyncio
async def test_unlabelled_operation_failure_propagates(mongo_store, database):
    await mongo_store.add_user(UserAccount(id="user-1", balance=100))
    database.client.commit_error = OperationFailure("not authorized", code=13)

    with pytest.raises(OperationFailure):
        await mongo_store.apply(
            BalanceWrite(user_id="user-1", expected_version=0, new_balance=30)
        )


@pytest.mark.asyncio
async def test_add_user_twice_raises_account_exists(mongo_store):
    await mongo_store.add_user(UserAccount(id="user-1"))

    with pytest.raises(AccountExists):
        await mongo_store.add_user(UserAccount(id="user-1"))


@pytest.mark.asyncio
async def test_external_refs_are_indexed_and_looked_up_per_user(mongo_store, database):
    await mongo_store.ensure_indexes()
    transactions = database[Transaction.collection_name]
    tx = _tx("alice", 500, 500, kind=TransactionKind.REFUND, external_ref="evt_1")
    await transactions.insert_one(MongoLedgerStore._prepare_insert(tx))

    keys, options = transactions.indexes[1]
    assert keys == [("user_id", 1), ("external_ref", 1)]
    assert options["unique"] is True
    assert options["partialFilterExpression"] == {"external_ref": {"$type": "string"}}
    assert (await mongo_store.get_transaction_by_external_ref("alice", "evt_1")).id == tx.id
    assert await mongo_store.get_transaction_by_external_ref("bob", "evt_1") is None
