from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure

from .base import BalanceWrite, BaseLedgerStore, StoreConflict, StoreUnavailable
from ..errors import AccountExists
from ..models.base import DBSerializableModel, utcnow
from ..models.ledger import LedgerEntry
from ..models.reservation import Reservation, ReservationState
from ..models.transaction import Transaction
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)


class MongoLedgerStore(BaseLedgerStore):
    """
    MongoDB implementation of BaseLedgerStore using motor (async driver).

    IDs are stored as string `_id` fields and mirrored in the `id` attribute
    of each Pydantic model.

    `apply` runs inside a multi-document transaction, so the deployment must
    be a replica set. The balance update filters on the account `version`;
    a miss means another writer got there first and is reported as
    `StoreConflict`, as are transient transaction errors and a user's
    duplicate external refs.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoLedgerStore":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        await self._db[Transaction.collection_name].create_index(
            [("user_id", ASCENDING), ("timestamp", DESCENDING)]
        )
        # Refund refs are unique per user; transactions without a ref are not indexed
        await self._db[Transaction.collection_name].create_index(
            [("user_id", ASCENDING), ("external_ref", ASCENDING)],
            unique=True,
            partialFilterExpression={"external_ref": {"$type": "string"}},
        )
        await self._db[Reservation.collection_name].create_index(
            [("state", ASCENDING), ("created_at", ASCENDING)]
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        try:
            async with await self._db.client.start_session() as session:
                async with session.start_transaction():
                    yield session
        except DuplicateKeyError as exc:
            raise StoreConflict(str(exc)) from exc
        except OperationFailure as exc:
            if exc.has_error_label("TransientTransactionError"):
                raise StoreConflict(str(exc)) from exc
            if exc.has_error_label("UnknownTransactionCommitResult"):
                raise StoreUnavailable(str(exc)) from exc
            raise
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    # Accounts
    async def add_user(self, user: UserAccount) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        try:
            await col.insert_one(self._prepare_insert(user))
        except DuplicateKeyError as exc:
            raise AccountExists(user.id) from exc
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"_id": user_id})
        return self._decode(UserAccount, doc)

    async def set_user_plan(self, user_id: str, plan_type: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {"$set": {"plan_type": plan_type, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(UserAccount, doc)

    # Conditional write
    async def apply(self, write: BalanceWrite) -> UserAccount:
        users = self._db[UserAccount.collection_name]
        reservations = self._db[Reservation.collection_name]
        transactions = self._db[Transaction.collection_name]

        async with self.transaction() as session:
            doc = await users.find_one_and_update(
                {"_id": write.user_id, "version": write.expected_version},
                {
                    "$set": {"balance": write.new_balance, "updated_at": utcnow()},
                    "$inc": {"version": 1},
                },
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if doc is None:
                raise StoreConflict(f"account {write.user_id} changed since it was read")

            if write.reservation is not None:
                data = self._prepare_insert(write.reservation)
                if write.expected_reservation_state is None:
                    await reservations.insert_one(data, session=session)
                else:
                    result = await reservations.replace_one(
                        {
                            "_id": data["_id"],
                            "state": ReservationState(write.expected_reservation_state).value,
                        },
                        data,
                        session=session,
                    )
                    if result.matched_count == 0:
                        raise StoreConflict(
                            f"reservation {write.reservation.id} changed since it was read"
                        )

            if write.transactions:
                await transactions.insert_many(
                    [self._prepare_insert(tx) for tx in write.transactions],
                    session=session,
                )

        return self._decode(UserAccount, doc)  # type: ignore[return-value]

    # Reservations
    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        col = self._db[Reservation.collection_name]
        doc = await col.find_one({"_id": reservation_id})
        return self._decode(Reservation, doc)

    async def get_open_reservations(self, created_before: datetime) -> Iterable[Reservation]:
        col = self._db[Reservation.collection_name]
        cursor = col.find(
            {
                "state": ReservationState.CREATED.value,
                "created_at": {"$lt": created_before},
            }
        ).sort("created_at", ASCENDING)
        docs = await cursor.to_list(length=None)
        return [self._decode(Reservation, d) for d in docs if d is not None]  # type: ignore[misc]

    # Transaction log
    async def get_transactions(self, user_id: str, limit: int) -> List[Transaction]:
        col = self._db[Transaction.collection_name]
        cursor = col.find({"user_id": user_id}).sort("timestamp", DESCENDING).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._decode(Transaction, d) for d in docs if d is not None]  # type: ignore[misc]

    async def get_transaction_by_external_ref(
        self, user_id: str, external_ref: str
    ) -> Optional[Transaction]:
        col = self._db[Transaction.collection_name]
        doc = await col.find_one({"user_id": user_id, "external_ref": external_ref})
        return self._decode(Transaction, doc)

    # Audit
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry))
        return entry
