"""
                        Services Module

Business logic behind the API. Each service is bound to one database
session per request; process-wide state (event bus, table blocks) comes
from cached factories.

Services:
    - orders: Order state machine and persisted lifecycle
    - tables: Table administration, floor view and customer blocks
    - shifts: Cash in / cash out ledger and derived balance
    - events: Topic-scoped event bus and the WebSocket hub
    - auth: Cashier accounts and login
    - activity: Fire-and-forget audit trail
    - excel_manager: Locked Excel export of closed shifts
"""

from app.services.excel_manager import ExcelManager

__all__ = ["ExcelManager"]
