"""
Shift / Cash Ledger

Cash-in opens a shift, cash-out closes it. At most one shift per cashier
is active at a time; the database enforces it with a partial unique
index, so two simultaneous cash-ins cannot both be committed even when
they reach different server processes.

The running balance is never stored. It is recomputed from the order
ledger on every read:

    balance = cash_in_amount
            + sum(total of cash-paid orders created since cash_in_time)
            - sum(total of those orders that were refunded)

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.errors import ConflictError, NotFoundError, ValidationError, as_result
from app.models import Order, PaymentMethod, Shift, ShiftStatus, utcnow
from app.schemas import CashBalance, ShiftSnapshot
from app.services.activity import ActivityLogger
from app.tasks import queue_shift_export

logger = logging.getLogger(__name__)
settings = get_settings()

SHIFT_HISTORY_LIMIT = 100


class ShiftLedger:
    """Shift operations bound to one database session."""

    def __init__(self, db: AsyncSession, activity: ActivityLogger):
        self.db = db
        self.activity = activity

    async def _active(self, cashier_id: str) -> Optional[Shift]:
        result = await self.db.execute(
            select(Shift)
            .where(Shift.cashier_id == cashier_id, Shift.status == ShiftStatus.ACTIVE)
            .order_by(Shift.cash_in_time.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @as_result
    async def get_active_shift(self, cashier_id: str) -> Optional[ShiftSnapshot]:
        """Authoritative shift state; None when the cashier has not cashed in."""
        shift = await self._active(_cashier_key(cashier_id))
        return ShiftSnapshot.model_validate(shift) if shift else None

    @as_result
    async def cash_in(self, cashier_id: str, cashier_username: str, amount: float) -> ShiftSnapshot:
        """
        Open a shift.

        Raises:
            ValidationError: negative or missing amount
            ConflictError: the cashier already has an active shift
        """
        cashier_id = _cashier_key(cashier_id)
        amount = _amount(amount)

        if await self._active(cashier_id) is not None:
            raise ConflictError("You already have an active shift. Please cash out first.")

        now = utcnow()
        shift = Shift(
            cashier_id=cashier_id,
            cashier_username=cashier_username,
            cash_in_amount=amount,
            cash_in_time=now,
            status=ShiftStatus.ACTIVE,
            shift_date=now,
        )
        self.db.add(shift)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent cash-in for this cashier
            await self.db.rollback()
            raise ConflictError("You already have an active shift. Please cash out first.")
        await self.db.refresh(shift)

        logger.info(f"💵 Cash in: {cashier_username} opened shift #{shift.id} with {amount:.2f}")
        await self.activity.log(
            "Shift", "Cash In", cashier_username,
            f"Cash in: {settings.currency_label} {amount:.2f}",
        )
        return ShiftSnapshot.model_validate(shift)

    @as_result
    async def cash_out(self, cashier_id: str, amount: float) -> ShiftSnapshot:
        """
        Close the active shift and report its difference (cash out - cash in).

        Raises:
            ValidationError: negative or missing amount
            NotFoundError: no active shift for this cashier
        """
        cashier_id = _cashier_key(cashier_id)
        amount = _amount(amount)

        shift = await self._active(cashier_id)
        if shift is None:
            raise NotFoundError("No active shift found. Please cash in first.")

        now = utcnow()
        result = await self.db.execute(
            update(Shift)
            .where(and_(Shift.id == shift.id, Shift.status == ShiftStatus.ACTIVE))
            .values(
                cash_out_amount=amount,
                cash_out_time=now,
                status=ShiftStatus.COMPLETED,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        matched = result.rowcount
        await self.db.commit()
        if matched == 0:
            raise NotFoundError("No active shift found. Please cash in first.")

        await self.db.refresh(shift)
        snapshot = ShiftSnapshot.model_validate(shift)
        logger.info(
            f"💵 Cash out: {snapshot.cashier_username} closed shift #{snapshot.id} "
            f"(difference {snapshot.difference:.2f})"
        )

        queue_shift_export(snapshot.model_dump(mode="json"))
        await self.activity.log(
            "Shift", "Cash Out", snapshot.cashier_username,
            f"Cash out: {settings.currency_label} {amount:.2f} "
            f"(Difference: {settings.currency_label} {snapshot.difference:.2f})",
        )
        return snapshot

    @as_result
    async def list_shifts(self, cashier_id: str) -> list[ShiftSnapshot]:
        """Newest first, capped at SHIFT_HISTORY_LIMIT."""
        result = await self.db.execute(
            select(Shift)
            .where(Shift.cashier_id == _cashier_key(cashier_id))
            .order_by(Shift.cash_in_time.desc(), Shift.id.desc())
            .limit(SHIFT_HISTORY_LIMIT)
        )
        return [ShiftSnapshot.model_validate(s) for s in result.scalars().all()]

    @as_result
    async def running_balance(self, cashier_id: str) -> CashBalance:
        """
        Derive the cash position of the active shift from the order ledger.

        Raises:
            NotFoundError: no active shift for this cashier
        """
        shift = await self._active(_cashier_key(cashier_id))
        if shift is None:
            raise NotFoundError("No active shift found. Please cash in first.")

        since_cash_in = and_(
            Order.payment_method == PaymentMethod.CASH,
            Order.is_paid.is_(True),
            Order.created_at >= shift.cash_in_time,
        )
        payments = (
            await self.db.execute(select(func.coalesce(func.sum(Order.total), 0.0)).where(since_cash_in))
        ).scalar()
        refunds = (
            await self.db.execute(
                select(func.coalesce(func.sum(Order.total), 0.0)).where(
                    since_cash_in, Order.refund_status.is_(True)
                )
            )
        ).scalar()

        return CashBalance(
            shift_id=shift.id,
            cashier_id=shift.cashier_id,
            cash_in_amount=shift.cash_in_amount,
            cash_payments=round(float(payments), 2),
            cash_refunds=round(float(refunds), 2),
            balance=round(shift.cash_in_amount + float(payments) - float(refunds), 2),
        )


def _cashier_key(cashier_id) -> str:
    key = str(cashier_id or "").strip()
    if not key:
        raise ValidationError("Cashier ID is required")
    return key


def _amount(amount) -> float:
    if amount is None:
        raise ValidationError("Valid amount is required")
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("Valid amount is required")
    if value < 0 or value != value:
        raise ValidationError("Valid amount is required")
    return round(value, 2)
