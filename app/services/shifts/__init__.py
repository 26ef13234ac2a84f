"""
Shift Services

Usage:
    from app.services.shifts import ShiftLedger

    ledger = ShiftLedger(db, activity)
    result = await ledger.cash_in("cashier-1", "nimal", 1000)
"""

from app.services.shifts.ledger import SHIFT_HISTORY_LIMIT, ShiftLedger

__all__ = ["ShiftLedger", "SHIFT_HISTORY_LIMIT"]
