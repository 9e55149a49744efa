"""Post-close protections.

Every closed trade runs through four guards (cooldown, stop-loss guard, max
drawdown, low-profit pair). A guard that trips writes a lock into the
LockStore. Guards never raise: a failure is logged and carried back on its
``GuardResult`` so the remaining guards still run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from tradecore.infrastructure.logging.logging import get_logger
from tradecore.infrastructure.storage.repositories import TradeRepository
from tradecore.infrastructure.utils.config import ProtectionConfig
from tradecore.infrastructure.utils.timeutils import Clock, minutes_from, to_iso, utc_now
from tradecore.models.trade_models import GLOBAL_SCOPE, Trade
from tradecore.services.risk.pair_locks import LockStore

STOPLOSS_PATTERNS = ("stop-loss", "stop_loss", "stoploss", "stop loss", "trailing stop")


@dataclass(frozen=True)
class GuardResult:
    guard: str
    triggered: bool = False
    lock_scope: Optional[str] = None
    detail: Optional[str] = None
    error: Optional[str] = None


def is_stoploss_exit(exit_reason: Optional[str]) -> bool:
    reason = (exit_reason or "").lower()
    return any(p in reason for p in STOPLOSS_PATTERNS)


class ProtectionEngine:
    def __init__(
        self,
        config: ProtectionConfig,
        lock_store: LockStore,
        trades: TradeRepository,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._cfg = config
        self._locks = lock_store
        self._trades = trades
        self._clock = clock
        self._log = get_logger("protections")

    def evaluate_after_close(self, symbol: str, exit_reason: str, pnl_pct: float) -> List[GuardResult]:
        """Run every guard for a just-closed trade. Never raises."""
        log = self._log.bind(symbol=symbol, exit_reason=exit_reason, pnl_pct=pnl_pct)
        results: List[GuardResult] = []
        for name, guard in (
            ("cooldown", lambda: self._cooldown(symbol)),
            ("stoploss_guard", lambda: self._stoploss_guard(symbol)),
            ("max_drawdown", self._max_drawdown),
            ("low_profit", lambda: self._low_profit_pair(symbol)),
        ):
            try:
                results.append(guard())
            except Exception as e:
                log.error("protection_guard_failed", guard=name, error=str(e))
                results.append(GuardResult(name, error=str(e)))

        tripped = [r.guard for r in results if r.triggered]
        if tripped:
            log.info("protections_triggered", guards=tripped)
        return results

    def can_trade(self, symbol: str) -> bool:
        return not self._locks.is_locked(symbol).locked

    def _cutoff(self, lookback_minutes: float) -> str:
        return to_iso(minutes_from(self._clock(), -lookback_minutes))

    def _recent_closed(self, lookback_minutes: float, symbol: Optional[str] = None) -> List[Trade]:
        return self._trades.list_closed_since(self._cutoff(lookback_minutes), symbol=symbol)

    def _cooldown(self, symbol: str) -> GuardResult:
        minutes = self._cfg.cooldown_minutes
        if minutes <= 0:
            return GuardResult("cooldown")
        self._locks.lock(symbol, minutes, "cooldown")
        return GuardResult("cooldown", True, symbol, f"{minutes}m")

    def _stoploss_guard(self, symbol: str) -> GuardResult:
        cfg = self._cfg.stoploss_guard
        if not cfg.enabled:
            return GuardResult("stoploss_guard")

        scope_symbol = symbol if cfg.only_per_pair else None
        count = sum(1 for t in self._recent_closed(cfg.lookback_minutes, scope_symbol) if is_stoploss_exit(t.exit_reason))
        if count < cfg.trade_limit:
            return GuardResult("stoploss_guard", detail=f"{count}/{cfg.trade_limit}")

        if cfg.only_per_pair:
            self._locks.lock(symbol, cfg.lock_minutes, "stoploss_guard")
            scope = symbol
        else:
            self._locks.lock_global(cfg.lock_minutes, "stoploss_guard")
            scope = GLOBAL_SCOPE
        self._log.warning(
            "stoploss_guard_triggered",
            scope=scope,
            stoploss_count=count,
            trade_limit=cfg.trade_limit,
            lock_minutes=cfg.lock_minutes,
        )
        return GuardResult("stoploss_guard", True, scope, f"{count}/{cfg.trade_limit}")

    def _max_drawdown(self) -> GuardResult:
        cfg = self._cfg.max_drawdown_lock
        if not cfg.enabled:
            return GuardResult("max_drawdown")

        cum = 0.0
        peak = 0.0
        max_dd = 0.0
        for trade in self._recent_closed(cfg.lookback_minutes):
            if trade.pnl_pct is None:
                continue
            cum += trade.pnl_pct
            peak = max(peak, cum)
            max_dd = max(max_dd, peak - cum)

        if max_dd <= cfg.max_drawdown_pct:
            return GuardResult("max_drawdown", detail=f"{max_dd:.4f}")

        self._locks.lock_global(cfg.lock_minutes, "max_drawdown")
        self._log.warning(
            "max_drawdown_lock_triggered",
            max_drawdown=round(max_dd, 6),
            threshold=cfg.max_drawdown_pct,
            lock_minutes=cfg.lock_minutes,
        )
        return GuardResult("max_drawdown", True, GLOBAL_SCOPE, f"{max_dd:.4f}")

    def _low_profit_pair(self, symbol: str) -> GuardResult:
        cfg = self._cfg.low_profit_pair
        if not cfg.enabled:
            return GuardResult("low_profit")

        pnls = [t.pnl_pct for t in self._recent_closed(cfg.lookback_minutes, symbol) if t.pnl_pct is not None]
        if len(pnls) < cfg.trade_limit:
            return GuardResult("low_profit", detail=f"{len(pnls)}/{cfg.trade_limit} trades")

        total = sum(pnls)
        if total > cfg.min_profit:
            return GuardResult("low_profit", detail=f"{total:.4f}")

        self._locks.lock(symbol, cfg.lock_minutes, "low_profit")
        self._log.warning(
            "low_profit_pair_locked",
            symbol=symbol,
            total_profit_pct=round(total, 6),
            min_profit=cfg.min_profit,
            trade_count=len(pnls),
            lock_minutes=cfg.lock_minutes,
        )
        return GuardResult("low_profit", True, symbol, f"{total:.4f}")
