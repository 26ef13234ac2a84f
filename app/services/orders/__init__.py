"""
Order Services

    state_machine  pure transition rules
    service        persisted lifecycle with guarded updates and broadcasts
"""

from app.services.orders.service import OrderService, generate_order_code

__all__ = ["OrderService", "generate_order_code"]
