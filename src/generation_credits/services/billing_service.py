from __future__ import annotations

import logging
from typing import Dict, Optional

from ..errors import AccountExists, CreditError, InvalidPaymentEvent, UserNotFound
from ..models.billing import PaymentEvent
from ..models.outcome import ServiceOutcome
from ..models.user import PlanType
from .credit_service import CreditLedger
from .plan_gate import PlanGate


logger = logging.getLogger(__name__)


class BillingService:
    """
    Applies settled payments to the ledger.

    Credits are added through `CreditLedger.refund` keyed by the event id, so
    a redelivered event never credits twice. Plan purchases also move the
    account onto that plan; unknown users get an account opened first.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        plan_gate: Optional[PlanGate] = None,
        plan_credits: Optional[Dict[str, int]] = None,
    ) -> None:
        self._ledger = ledger
        self._plan_gate = plan_gate
        self.plan_credits = plan_credits or {
            PlanType.PRO.value: 2000,
            PlanType.CUSTOM.value: 3300,
        }

    def credits_for(self, event: PaymentEvent) -> int:
        if event.credits is not None:
            return event.credits
        if event.plan is None:
            raise InvalidPaymentEvent(event.event_id, "neither plan nor credits given")
        credits = self.plan_credits.get(event.plan)
        if credits is None:
            raise InvalidPaymentEvent(event.event_id, f"unknown plan '{event.plan}'")
        return credits

    async def handle_payment_succeeded(self, event: PaymentEvent) -> ServiceOutcome:
        try:
            credits = self.credits_for(event)
            await self._ensure_account(event)

            tx = await self._ledger.refund(
                event.user_id,
                credits,
                reason=f"payment:{event.plan or 'credits'}",
                external_ref=event.event_id,
            )
            if event.plan is not None and event.plan in self.plan_credits:
                await self._ledger.set_plan(event.user_id, event.plan)
                if self._plan_gate is not None:
                    await self._plan_gate.invalidate(event.user_id)
        except CreditError as exc:
            logger.warning("Payment event %s not applied: %s", event.event_id, exc.message)
            return ServiceOutcome.from_error(exc)

        balance = await self._ledger.get_balance(event.user_id)
        logger.info(
            "Payment %s for user %s: %d credits (%d %s)",
            event.event_id,
            event.user_id,
            credits,
            event.amount_cents,
            event.currency,
        )
        return ServiceOutcome.ok(
            "Payment applied",
            user_id=event.user_id,
            credits_added=credits,
            plan=event.plan,
            transaction_id=tx.id,
            new_balance=balance,
        )

    async def _ensure_account(self, event: PaymentEvent) -> None:
        try:
            await self._ledger.get_balance(event.user_id)
        except UserNotFound:
            try:
                await self._ledger.open_account(event.user_id)
            except AccountExists:
                # Opened by a concurrent event for the same user
                logger.debug("Account %s already opened", event.user_id)
