"""
Client Runtime

Building blocks for the screens that sit on top of the core: cashier,
kitchen and customer views.

    cache          OrderCache, overwrite-by-id view of order snapshots
    events         EventClient, topic subscriptions that survive reconnects
    mirror         LocalBlockMirror / BlockMirrorPoller / MirroredBlocker, degraded block channel
    table_session  CustomerTableSession, auto-release timers for a table block
    reconcile      ShiftReconciler, server-authoritative cashier session
"""

from app.client.cache import OrderCache
from app.client.events import EventClient
from app.client.mirror import BlockMirrorPoller, LocalBlockMirror, MirroredBlocker
from app.client.reconcile import (
    LocalSession,
    LocalSessionStore,
    ReconcileOutcome,
    ShiftReconciler,
)
from app.client.table_session import CustomerTableSession

__all__ = [
    "OrderCache",
    "EventClient",
    "BlockMirrorPoller",
    "LocalBlockMirror",
    "MirroredBlocker",
    "LocalSession",
    "LocalSessionStore",
    "ReconcileOutcome",
    "ShiftReconciler",
    "CustomerTableSession",
]
