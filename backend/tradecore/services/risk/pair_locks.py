"""Pair locks: time-boxed trading restrictions per symbol or global ("*").

Locks are never deleted. Expired or released locks are soft-deactivated so the
table doubles as an audit trail.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from tradecore.infrastructure.logging.logging import get_logger
from tradecore.infrastructure.storage.repositories import LockRepository
from tradecore.infrastructure.utils.timeutils import Clock, minutes_from, to_iso, utc_now
from tradecore.models.trade_models import ANY_SIDE, GLOBAL_SCOPE, Lock

LOCK_SIDES = (ANY_SIDE, "long", "short")


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    reason: Optional[str] = None


def _side_matches(lock_side: str, query_side: Optional[str]) -> bool:
    # No side in the query means "any side": every lock applies.
    if query_side is None or query_side == ANY_SIDE:
        return True
    return lock_side == ANY_SIDE or lock_side == query_side


class LockStore:
    def __init__(self, repo: LockRepository, *, clock: Clock = utc_now) -> None:
        self._repo = repo
        self._clock = clock
        self._log = get_logger("pair_locks")

    def lock(self, scope: str, duration_minutes: float, reason: str, side: str = ANY_SIDE) -> Lock:
        if side not in LOCK_SIDES:
            raise ValueError(f"side must be one of {LOCK_SIDES}, got {side!r}")
        now = self._clock()
        lock = Lock(
            scope=scope,
            lock_end=to_iso(minutes_from(now, duration_minutes)),
            reason=reason,
            side=side,
            active=True,
            created_at=to_iso(now),
        )
        lock.id = self._repo.insert(lock)
        self._log.info(
            "pair_locked",
            symbol=scope,
            duration_minutes=duration_minutes,
            reason=reason,
            side=side,
            lock_end=lock.lock_end,
        )
        return lock

    def lock_global(self, duration_minutes: float, reason: str) -> Lock:
        lock = self.lock(GLOBAL_SCOPE, duration_minutes, reason, ANY_SIDE)
        self._log.info("global_lock_activated", duration_minutes=duration_minutes, reason=reason)
        return lock

    def is_locked(self, symbol: str, side: Optional[str] = None) -> LockStatus:
        """Symbol-scoped locks are checked first, then global ones. First match wins."""
        now_iso = to_iso(self._clock())

        for lock in self._repo.list_active(now_iso, scope=symbol):
            if _side_matches(lock.side, side):
                return LockStatus(True, lock.reason or "Pair locked")

        for lock in self._repo.list_active(now_iso, scope=GLOBAL_SCOPE):
            if _side_matches(lock.side, side):
                return LockStatus(True, lock.reason or "Global lock active")

        return LockStatus(False)

    def is_globally_locked(self) -> LockStatus:
        active = self._repo.list_active(to_iso(self._clock()), scope=GLOBAL_SCOPE)
        if active:
            return LockStatus(True, active[0].reason or "Global lock active")
        return LockStatus(False)

    def list_active(self) -> List[Lock]:
        return self._repo.list_active(to_iso(self._clock()))

    def unlock(self, symbol: str) -> int:
        count = self._repo.deactivate_scope(symbol)
        self._log.info("pair_unlocked", symbol=symbol, deactivated=count)
        return count

    def sweep_expired(self) -> int:
        count = self._repo.deactivate_expired(to_iso(self._clock()))
        if count:
            self._log.info("expired_locks_swept", count=count)
        return count
