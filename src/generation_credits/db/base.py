from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, List, Optional

from ..models.ledger import LedgerEntry
from ..models.reservation import Reservation, ReservationState
from ..models.transaction import Transaction
from ..models.user import UserAccount


class TransientStoreError(Exception):
    """A store failure that is safe to retry: nothing was written."""


class StoreConflict(TransientStoreError):
    """A conditional write lost the race: the record changed after it was read."""


class StoreUnavailable(TransientStoreError):
    """The store could not be reached."""


@dataclass
class BalanceWrite:
    """
    One atomic ledger mutation.

    Applied only if the account is still at `expected_version` and, when a
    reservation is given, the stored reservation is still in
    `expected_reservation_state` (`None` means the reservation is new).
    Balance, reservation and transactions are written together or not at all.
    """

    user_id: str
    expected_version: int
    new_balance: int
    transactions: List[Transaction] = field(default_factory=list)
    reservation: Optional[Reservation] = None
    expected_reservation_state: Optional[ReservationState] = None


class BaseLedgerStore(ABC):
    """
    Storage-agnostic async ledger store.

    Concrete implementations (in-memory, MongoDB) provide a conditional
    write, an append-only transaction log and an atomic `transaction()` unit.
    Services never mutate balances except through `apply`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """
        Provide an atomic unit of work. Writes made inside are discarded if
        the block raises.
        """
        yield

    # Accounts
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount:
        """Raises `AccountExists` when the id is taken."""
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def set_user_plan(self, user_id: str, plan_type: str) -> Optional[UserAccount]: ...

    # Conditional write
    @abstractmethod
    async def apply(self, write: BalanceWrite) -> UserAccount:
        """
        Apply `write` atomically. Raises `StoreConflict` when a version or
        reservation-state precondition no longer holds.
        """
        ...

    # Reservations
    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]: ...

    @abstractmethod
    async def get_open_reservations(self, created_before: datetime) -> Iterable[Reservation]: ...

    # Transaction log
    @abstractmethod
    async def get_transactions(self, user_id: str, limit: int) -> List[Transaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def get_transaction_by_external_ref(
        self, user_id: str, external_ref: str
    ) -> Optional[Transaction]: ...

    # Audit
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
