from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from .base import BalanceWrite, BaseLedgerStore, StoreConflict
from ..errors import AccountExists
from ..models.base import utcnow
from ..models.ledger import LedgerEntry
from ..models.reservation import Reservation
from ..models.transaction import Transaction
from ..models.user import UserAccount


class InMemoryLedgerStore(BaseLedgerStore):
    """
    In-memory store used for tests and local development.

    Writes are serialized by a single lock and preconditions are checked
    before anything is mutated, so `apply` is all-or-nothing. Records are
    copied on the way in and out; callers never hold a live reference.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._transactions: List[Transaction] = []
        # Keyed by (user_id, external_ref)
        self._external_refs: Dict[Tuple[str, str], Transaction] = {}
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            yield

    # Accounts
    async def add_user(self, user: UserAccount) -> UserAccount:
        async with self.transaction():
            if user.id in self._users:
                raise AccountExists(user.id)
            self._users[user.id] = user.model_copy(deep=True)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user is not None else None

    async def set_user_plan(self, user_id: str, plan_type: str) -> Optional[UserAccount]:
        async with self.transaction():
            user = self._users.get(user_id)
            if user is None:
                return None
            user.plan_type = plan_type
            user.updated_at = utcnow()
            return user.model_copy(deep=True)

    # Conditional write
    async def apply(self, write: BalanceWrite) -> UserAccount:
        async with self.transaction():
            user = self._users.get(write.user_id)
            if user is None or user.version != write.expected_version:
                raise StoreConflict(f"account {write.user_id} changed since it was read")

            if write.reservation is not None:
                stored = self._reservations.get(write.reservation.id)
                if write.expected_reservation_state is None:
                    if stored is not None:
                        raise StoreConflict(f"reservation {write.reservation.id} already exists")
                elif stored is None or stored.state != write.expected_reservation_state:
                    raise StoreConflict(f"reservation {write.reservation.id} changed since it was read")

            for tx in write.transactions:
                if tx.external_ref and (tx.user_id, tx.external_ref) in self._external_refs:
                    raise StoreConflict(f"external ref {tx.external_ref} already recorded")

            # Preconditions hold; mutate
            user.balance = write.new_balance
            user.version += 1
            user.updated_at = utcnow()
            if write.reservation is not None:
                self._reservations[write.reservation.id] = write.reservation.model_copy(deep=True)
            for tx in write.transactions:
                stored_tx = tx.model_copy(deep=True)
                self._transactions.append(stored_tx)
                if tx.external_ref:
                    self._external_refs[(tx.user_id, tx.external_ref)] = stored_tx
            return user.model_copy(deep=True)

    # Reservations
    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        reservation = self._reservations.get(reservation_id)
        return reservation.model_copy(deep=True) if reservation is not None else None

    async def get_open_reservations(self, created_before: datetime) -> Iterable[Reservation]:
        return [
            r.model_copy(deep=True)
            for r in self._reservations.values()
            if not r.state.is_terminal and r.created_at < created_before
        ]

    # Transaction log
    async def get_transactions(self, user_id: str, limit: int) -> List[Transaction]:
        user_txs = [t for t in self._transactions if t.user_id == user_id]
        # Appended in write order, so reversing gives newest first
        return [t.model_copy(deep=True) for t in reversed(user_txs)][:limit]

    async def get_transaction_by_external_ref(
        self, user_id: str, external_ref: str
    ) -> Optional[Transaction]:
        tx = self._external_refs.get((user_id, external_ref))
        return tx.model_copy(deep=True) if tx is not None else None

    # Audit
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)
