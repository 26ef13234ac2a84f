"""
Cashier Authentication

Password hashing sits behind two functions so the rest of the core never
touches bcrypt directly. Login returns the authoritative active shift so
the client can reconcile its cached cash-in state immediately.
"""

import logging
from typing import Optional

import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, ValidationError, as_result
from app.models import Cashier
from app.schemas import LoginResponse
from app.services.activity import ActivityLogger
from app.services.shifts import ShiftLedger

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"


def hash_password(plaintext: str) -> str:
    return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plaintext: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(plaintext.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


class CashierAuthService:

    def __init__(self, db: AsyncSession, activity: ActivityLogger):
        self.db = db
        self.activity = activity

    @as_result
    async def create_cashier(self, username: str, password: str) -> str:
        """Create a cashier account; returns its id."""
        username = (username or "").strip()
        if not username or not password:
            raise ValidationError("Username and password are required")

        cashier = Cashier(username=username, password_hash=hash_password(password))
        self.db.add(cashier)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Username already exists")
        await self.db.refresh(cashier)

        logger.info(f"Cashier {username} created")
        await self.activity.log("Cashier", "Added", None, f"New cashier created: {username}")
        return str(cashier.id)

    @as_result
    async def login(self, username: str, password: str) -> LoginResponse:
        """
        Verify credentials and return the cashier with its active shift.

        Raises:
            ValidationError: unknown user, inactive account or wrong password
        """
        cashier: Optional[Cashier] = (
            await self.db.execute(select(Cashier).where(Cashier.username == (username or "").strip()))
        ).scalar_one_or_none()

        if cashier is None or not cashier.is_active or not verify_password(password, cashier.password_hash):
            await self.activity.log("Cashier", "Login", username, "Failed login attempt", outcome="failure")
            raise ValidationError(INVALID_CREDENTIALS)

        cashier_id = str(cashier.id)
        active_shift = (await ShiftLedger(self.db, self.activity).get_active_shift(cashier_id)).unwrap()

        await self.activity.log("Cashier", "Login", cashier.username, "Cashier logged in")
        return LoginResponse(
            cashier_id=cashier_id,
            username=cashier.username,
            active_shift=active_shift,
        )
