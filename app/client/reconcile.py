"""
Shift Reconciler

Cashier screens cache their session (logged in, cashed in, amount) so a
reload does not lose it. That cache is never trusted on its own: on
every login and every dashboard mount the reconciler asks the server for
the active shift and overwrites the cache with the answer.

    local cashed in, server has no shift  -> SESSION_EXPIRED (cache cleared)
    local not cashed in, server has shift -> RECOVERED (server shift adopted)
    both agree                            -> IN_SYNC / NO_SHIFT

Cash actions stay disabled until a reconciliation has succeeded.

Usage:
    async with ShiftReconciler("http://localhost:8001", "data/session.json") as rec:
        outcome = await rec.reconcile("7", "nimal")
        if outcome is ReconcileOutcome.SESSION_EXPIRED:
            ...  # send the cashier back through cash-in
"""

import json
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import httpx
from filelock import FileLock

from app.core.config import get_settings
from app.core.errors import (
    ConflictError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)
from app.schemas import ShiftSnapshot

logger = logging.getLogger(__name__)
settings = get_settings()

_ERRORS_BY_STATUS = {
    400: ValidationError,
    404: NotFoundError,
    409: ConflictError,
}


class ReconcileOutcome(str, Enum):
    IN_SYNC = "in_sync"
    RECOVERED = "recovered"
    SESSION_EXPIRED = "session_expired"
    NO_SHIFT = "no_shift"


@dataclass
class LocalSession:
    """What the cashier screen keeps between reloads."""
    cashier_id: Optional[str] = None
    username: Optional[str] = None
    is_logged_in: bool = False
    has_cash_in: bool = False
    shift_id: Optional[int] = None
    cash_in_amount: Optional[float] = None

    def adopt(self, shift: ShiftSnapshot) -> None:
        self.has_cash_in = True
        self.shift_id = shift.id
        self.cash_in_amount = shift.cash_in_amount

    def clear_shift(self) -> None:
        self.has_cash_in = False
        self.shift_id = None
        self.cash_in_amount = None


class LocalSessionStore:
    """JSON file cache of a LocalSession, guarded by a file lock."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.lock = FileLock(str(self.path) + ".lock", timeout=5)

    def load(self) -> LocalSession:
        with self.lock:
            if not self.path.exists():
                return LocalSession()
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                return LocalSession(**data)
            except (ValueError, TypeError) as e:
                logger.warning(f"Discarding unreadable session cache {self.path}: {e}")
                return LocalSession()

    def save(self, session: LocalSession) -> None:
        with self.lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(asdict(session)), encoding="utf-8")

    def clear(self) -> None:
        self.save(LocalSession())


class ShiftReconciler:

    def __init__(
        self,
        base_url: Optional[str] = None,
        cache_path: Union[str, Path, None] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.store = LocalSessionStore(cache_path or Path(settings.data_directory) / "cashier_session.json")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url or settings.api_base_url, timeout=timeout)
        self.session = self.store.load()
        self.reconciled = False

    async def __aenter__(self) -> "ShiftReconciler":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @property
    def cash_actions_enabled(self) -> bool:
        return self.reconciled and self.session.is_logged_in

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientInfraError(f"Server unreachable: {e.__class__.__name__}")

        if response.status_code >= 400:
            try:
                message = response.json().get("error") or response.text
            except ValueError:
                message = response.text
            error_cls = _ERRORS_BY_STATUS.get(response.status_code, TransientInfraError)
            raise error_cls(message)
        return response.json()

    async def fetch_active_shift(self, cashier_id: str) -> Optional[ShiftSnapshot]:
        data = await self._request("GET", "/api/shifts/active", params={"cashier_id": cashier_id})
        shift = data.get("active_shift")
        return ShiftSnapshot.model_validate(shift) if shift else None

    async def reconcile(self, cashier_id: str, username: Optional[str] = None) -> ReconcileOutcome:
        """
        Overwrite the local session with the server's shift state.

        Raises:
            TransientInfraError: server unreachable; cash actions stay disabled
        """
        self.reconciled = False
        local_cashed_in = self.session.has_cash_in and self.session.cashier_id == cashier_id
        shift = await self.fetch_active_shift(cashier_id)

        self.session.cashier_id = cashier_id
        self.session.username = username or self.session.username
        self.session.is_logged_in = True

        if shift is None and local_cashed_in:
            outcome = ReconcileOutcome.SESSION_EXPIRED
            self.session = LocalSession()
            logger.warning(f"Cashier {cashier_id}: cached cash-in has no server shift, session expired")
        elif shift is None:
            outcome = ReconcileOutcome.NO_SHIFT
            self.session.clear_shift()
        elif not local_cashed_in:
            outcome = ReconcileOutcome.RECOVERED
            self.session.adopt(shift)
            logger.info(f"Cashier {cashier_id}: recovered active shift #{shift.id} from server")
        else:
            outcome = ReconcileOutcome.IN_SYNC
            self.session.adopt(shift)

        self.store.save(self.session)
        self.reconciled = outcome is not ReconcileOutcome.SESSION_EXPIRED
        return outcome

    def _require_reconciled(self) -> None:
        if not self.cash_actions_enabled:
            raise ConflictError("Shift state has not been confirmed with the server yet")

    async def cash_in(self, amount: float) -> ShiftSnapshot:
        self._require_reconciled()
        data = await self._request("POST", "/api/shifts/cash-in", json={
            "cashier_id": self.session.cashier_id,
            "cashier_username": self.session.username or self.session.cashier_id,
            "amount": amount,
        })
        shift = ShiftSnapshot.model_validate(data)
        self.session.adopt(shift)
        self.store.save(self.session)
        return shift

    async def cash_out(self, amount: float) -> ShiftSnapshot:
        self._require_reconciled()
        try:
            data = await self._request("POST", "/api/shifts/cash-out", json={
                "cashier_id": self.session.cashier_id,
                "cashier_username": self.session.username or self.session.cashier_id,
                "amount": amount,
            })
        except NotFoundError:
            # Server has no shift: local state was stale
            self.session.clear_shift()
            self.store.save(self.session)
            raise
        shift = ShiftSnapshot.model_validate(data)
        self.session.clear_shift()
        self.store.save(self.session)
        return shift

    def logout(self) -> None:
        self.session = LocalSession()
        self.store.clear()
        self.reconciled = False


__all__ = [
    "LocalSession",
    "LocalSessionStore",
    "ReconcileOutcome",
    "ShiftReconciler",
]
