"""
                Restaurant POS Coordination Core

Real-time order, table and cashier-shift coordination for a
restaurant floor: order state machine, table blocking protocol,
cash ledger and topic-scoped event broadcasting.

Author: Khalil_Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil_Bannouri"
