from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, List, Optional
from uuid import uuid4

from ..cache.base import AsyncCacheBackend, balance_key
from ..db.base import BalanceWrite, BaseLedgerStore
from ..errors import InsufficientCredits, ReservationNotFound, UserNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.pricing import CreditRatioTable
from ..models.reservation import Reservation, ReservationState
from ..models.transaction import Transaction, TransactionKind
from ..models.user import PlanType, UserAccount
from .retry import RetryPolicy


logger = logging.getLogger(__name__)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class CreditLedger:
    """
    Owns every user's credit balance.

    Each mutation is one conditional store write (balance + reservation +
    transaction line) wrapped in the retry policy. Reads feeding a write
    always come from the store, never from the cache.
    """

    def __init__(
        self,
        store: BaseLedgerStore,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        retry_policy: Optional[RetryPolicy] = None,
        ratios: Optional[CreditRatioTable] = None,
        balance_cache_ttl: int = 60,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._cache = cache
        self._retry = retry_policy or RetryPolicy()
        self._ratios = ratios or CreditRatioTable()
        self._balance_cache_ttl = balance_cache_ttl

    # Pricing

    def calculate_required_credits(
        self, amount: int, tool_type: str = "writing", operation: Optional[str] = None
    ) -> int:
        return self._ratios.required_credits(amount, tool_type, operation)

    # Accounts

    async def open_account(
        self,
        user_id: str,
        plan_type: PlanType | str = PlanType.FREEMIUM,
        opening_balance: int = 0,
    ) -> UserAccount:
        """Create an account; raises `AccountExists` when the id is taken."""
        if opening_balance < 0:
            raise ValueError("opening balance must not be negative")
        user = UserAccount(
            id=user_id,
            plan_type=PlanType(plan_type).value if isinstance(plan_type, PlanType) else plan_type,
            balance=opening_balance,
        )
        user = await self._store.add_user(user)
        await self._ledger.log_transaction(
            user_id=user_id,
            message="Account opened",
            details={"plan_type": user.plan_type, "opening_balance": opening_balance},
        )
        await self._cache_balance(user)
        return user

    async def set_plan(self, user_id: str, plan_type: PlanType | str) -> UserAccount:
        value = plan_type.value if isinstance(plan_type, PlanType) else plan_type
        user = await self._store.set_user_plan(user_id, value)
        if user is None:
            raise UserNotFound(user_id)
        await self._ledger.log_transaction(
            user_id=user_id, message="Plan changed", details={"plan_type": value}
        )
        return user

    # Reservations

    async def reserve(
        self,
        user_id: str,
        required_credits: int,
        tool_type: str | None = None,
        word_count: int = 0,
        correlation_id: str | None = None,
    ) -> Reservation:
        if required_credits <= 0:
            raise ValueError("amount must be positive")

        # Fixed across attempts so a retry can recognise its own earlier write
        reservation_id = _new_id("rsv")
        attempted = False

        async def attempt() -> tuple[Reservation, Optional[UserAccount]]:
            nonlocal attempted
            if attempted:
                existing = await self._store.get_reservation(reservation_id)
                if existing is not None:
                    return existing, await self._store.get_user(user_id)
            attempted = True

            user = await self._store.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id)
            if user.balance < required_credits:
                await self._ledger.log_error(
                    message="Insufficient credits for reservation",
                    details={"requested": required_credits, "available": user.balance},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientCredits(required_credits, user.balance)

            new_balance = user.balance - required_credits
            reservation = Reservation(
                id=reservation_id,
                user_id=user_id,
                amount=required_credits,
                tool_type=tool_type,
                word_count=word_count,
            )
            tx = Transaction(
                id=_new_id("txn"),
                user_id=user_id,
                kind=TransactionKind.RESERVE,
                amount=-required_credits,
                balance_after=new_balance,
                tool_type=tool_type,
                word_count=word_count,
                reservation_id=reservation_id,
            )
            account = await self._store.apply(
                BalanceWrite(
                    user_id=user_id,
                    expected_version=user.version,
                    new_balance=new_balance,
                    transactions=[tx],
                    reservation=reservation,
                )
            )
            return reservation, account

        reservation, account = await self._retry.run(attempt, "reserve")
        await self._cache_balance(account)

        await self._ledger.log_transaction(
            user_id=user_id,
            message="Credits reserved",
            details={
                "reservation_id": reservation.id,
                "amount": required_credits,
                "new_balance": account.balance if account else None,
                "tool_type": tool_type or "",
            },
            correlation_id=correlation_id,
        )
        return reservation

    async def commit(
        self,
        reservation_id: str,
        actual_credits: int,
        correlation_id: str | None = None,
    ) -> Reservation:
        """
        Finalize a reservation, charging `actual_credits` and returning the
        unused remainder. Charges are capped at the reserved amount. Calling
        this on a terminal reservation changes nothing.
        """
        if actual_credits < 0:
            raise ValueError("actual credits must not be negative")
        return await self._finalize(
            reservation_id,
            ReservationState.COMMITTED,
            actual_credits=actual_credits,
            correlation_id=correlation_id,
        )

    async def rollback(
        self,
        reservation_id: str,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> Reservation:
        """Return the full reserved amount. Idempotent."""
        return await self._finalize(
            reservation_id,
            ReservationState.ROLLED_BACK,
            reason=reason,
            correlation_id=correlation_id,
        )

    async def _finalize(
        self,
        reservation_id: str,
        target: ReservationState,
        actual_credits: int = 0,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> Reservation:
        async def attempt() -> tuple[Reservation, Optional[UserAccount]]:
            reservation = await self._store.get_reservation(reservation_id)
            if reservation is None:
                raise ReservationNotFound(reservation_id)
            if reservation.state.is_terminal:
                return reservation, None

            user = await self._store.get_user(reservation.user_id)
            if user is None:
                raise UserNotFound(reservation.user_id)

            if target is ReservationState.COMMITTED:
                charged = min(actual_credits, reservation.amount)
                returned = reservation.amount - charged
                kind = TransactionKind.COMMIT
            else:
                charged = 0
                returned = reservation.amount
                kind = TransactionKind.ROLLBACK

            finalized = reservation.model_copy(
                update={"state": target, "charged_credits": charged, "finalized_at": utcnow()}
            )
            new_balance = user.balance + returned
            tx = Transaction(
                id=_new_id("txn"),
                user_id=reservation.user_id,
                kind=kind,
                amount=returned,
                balance_after=new_balance,
                tool_type=reservation.tool_type,
                word_count=reservation.word_count,
                reservation_id=reservation.id,
                reason=reason,
            )
            account = await self._store.apply(
                BalanceWrite(
                    user_id=reservation.user_id,
                    expected_version=user.version,
                    new_balance=new_balance,
                    transactions=[tx],
                    reservation=finalized,
                    expected_reservation_state=ReservationState.CREATED,
                )
            )
            return finalized, account

        reservation, account = await self._retry.run(attempt, target.value.lower())

        if account is None:
            logger.debug(
                "Reservation %s already %s; %s ignored",
                reservation.id,
                reservation.state.value,
                target.value,
            )
            return reservation
        await self._cache_balance(account)

        if target is ReservationState.COMMITTED and actual_credits > reservation.amount:
            logger.warning(
                "Reservation %s: actual cost %d exceeds reserved %d; charge capped",
                reservation.id,
                actual_credits,
                reservation.amount,
            )

        message = (
            "Reserved credits committed"
            if target is ReservationState.COMMITTED
            else "Reserved credits rolled back"
        )
        await self._ledger.log_transaction(
            user_id=reservation.user_id,
            message=message,
            details={
                "reservation_id": reservation.id,
                "reserved": reservation.amount,
                "charged": reservation.charged_credits,
                "new_balance": account.balance,
                "reason": reason or "",
            },
            correlation_id=correlation_id,
        )
        return reservation

    @asynccontextmanager
    async def hold(
        self,
        user_id: str,
        required_credits: int,
        tool_type: str | None = None,
        word_count: int = 0,
        correlation_id: str | None = None,
    ) -> AsyncIterator[Reservation]:
        """
        Reserve credits for the duration of the block.

        Any exception, timeout or cancellation inside the block rolls the
        reservation back before the error propagates. A block that exits
        without committing is rolled back as well, so the reservation always
        reaches a terminal state.
        """
        reservation = await self.reserve(
            user_id,
            required_credits,
            tool_type=tool_type,
            word_count=word_count,
            correlation_id=correlation_id,
        )
        try:
            yield reservation
        except BaseException as exc:
            await self._rollback_quietly(reservation, f"aborted: {type(exc).__name__}", correlation_id)
            raise
        else:
            current = await self._store.get_reservation(reservation.id)
            if current is not None and not current.state.is_terminal:
                await self.rollback(
                    reservation.id, reason="not committed", correlation_id=correlation_id
                )

    async def _rollback_quietly(
        self, reservation: Reservation, reason: str, correlation_id: str | None
    ) -> None:
        # Shielded so a cancelled caller still returns the credits
        try:
            await asyncio.shield(
                self.rollback(reservation.id, reason=reason, correlation_id=correlation_id)
            )
        except Exception:
            logger.exception(
                "Rollback of reservation %s failed; left for the stale reservation sweep",
                reservation.id,
            )

    async def release_stale_reservations(
        self, older_than: timedelta, now: Optional[datetime] = None
    ) -> List[Reservation]:
        """Roll back reservations still open after `older_than`."""
        cutoff = (now or utcnow()) - older_than
        released: List[Reservation] = []
        for reservation in await self._store.get_open_reservations(created_before=cutoff):
            result = await self.rollback(reservation.id, reason="stale reservation")
            if result.state is ReservationState.ROLLED_BACK:
                released.append(result)
        if released:
            await self._ledger.log_system(
                message="Stale reservations released",
                details={"count": len(released), "cutoff": cutoff.isoformat()},
            )
        return released

    # Refunds

    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        external_ref: str | None = None,
        correlation_id: str | None = None,
    ) -> Transaction:
        """
        Add credits outside any reservation, e.g. after a payment event.

        `external_ref` makes the call idempotent per user: a second refund to
        the same user with the same ref returns the first transaction. The
        same ref on another user's refund is a separate refund. Without a
        ref one is generated, so retries of this call cannot apply twice.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        ref = external_ref or _new_id("refund")

        async def attempt() -> tuple[Transaction, Optional[UserAccount]]:
            existing = await self._store.get_transaction_by_external_ref(user_id, ref)
            if existing is not None:
                return existing, None

            user = await self._store.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id)

            new_balance = user.balance + amount
            tx = Transaction(
                id=_new_id("txn"),
                user_id=user_id,
                kind=TransactionKind.REFUND,
                amount=amount,
                balance_after=new_balance,
                reason=reason,
                external_ref=ref,
            )
            account = await self._store.apply(
                BalanceWrite(
                    user_id=user_id,
                    expected_version=user.version,
                    new_balance=new_balance,
                    transactions=[tx],
                )
            )
            return tx, account

        tx, account = await self._retry.run(attempt, "refund")
        if account is None:
            logger.info("Refund %s for user %s already applied; ignored", ref, user_id)
            return tx
        await self._cache_balance(account)

        await self._ledger.log_transaction(
            user_id=user_id,
            message="Credits refunded",
            details={
                "amount": amount,
                "new_balance": tx.balance_after,
                "reason": reason,
                "external_ref": ref,
            },
            correlation_id=correlation_id,
        )
        return tx

    # Reads

    async def get_balance(self, user_id: str) -> int:
        if self._cache is not None:
            cached = await self._cache.get_versioned(balance_key(user_id))
            if cached is not None:
                return cached[1]
        user = await self._store.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        await self._cache_balance(user)
        return user.balance

    async def get_transaction_history(self, user_id: str, limit: int = 50) -> List[Transaction]:
        if await self._store.get_user(user_id) is None:
            raise UserNotFound(user_id)
        return await self._store.get_transactions(user_id, limit=limit)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = await self._store.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        return reservation

    # Cache

    async def _cache_balance(self, account: Optional[UserAccount]) -> None:
        # Written straight after the store write, tagged with the account version
        if self._cache is None or account is None:
            return
        await self._cache.set_if_newer(
            balance_key(account.id),
            account.version,
            account.balance,
            ttl_seconds=self._balance_cache_ttl,
        )
