"""Pre-trade risk validation (NO NEGOCIABLE).

Stateless per call: a proposal plus a portfolio snapshot in, an allow/reject
decision out. Rejections are results, never exceptions.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from tradecore.infrastructure.logging.logging import get_logger
from tradecore.infrastructure.storage.repositories import TradeRepository
from tradecore.infrastructure.utils.config import RiskConfig
from tradecore.models.trade_models import ANY_SIDE, PortfolioState, Trade, TradeProposal
from tradecore.services.risk.pair_locks import LockStore


@dataclass(frozen=True)
class ValidationResult:
    allowed: bool
    reason: Optional[str] = None


def _is_loss(trade: Trade) -> bool:
    if trade.pnl is not None:
        return trade.pnl < 0
    return (trade.exit_price or 0.0) < trade.entry_price


class RiskValidator:
    def __init__(self, config: RiskConfig, lock_store: LockStore, trades: TradeRepository) -> None:
        self._cfg = config
        self._locks = lock_store
        self._trades = trades
        self._log = get_logger("risk_validator")

    def _reject(self, proposal: TradeProposal, reason: str) -> ValidationResult:
        self._log.warning("trade_rejected", symbol=proposal.symbol, side=proposal.side, reason=reason)
        return ValidationResult(False, reason)

    def validate(self, proposal: TradeProposal, portfolio: PortfolioState) -> ValidationResult:
        try:
            status = self._locks.is_locked(proposal.symbol, ANY_SIDE)
        except Exception as e:
            # A lock store outage must not block trading
            self._log.warning("pair_lock_check_skipped", symbol=proposal.symbol, error=str(e))
        else:
            if status.locked:
                return self._reject(proposal, f"Pair locked: {status.reason}")

        if proposal.side.upper() != "BUY":
            self._log.debug("trade_validated", symbol=proposal.symbol, side=proposal.side)
            return ValidationResult(True)

        cfg = self._cfg

        if portfolio.open_positions >= cfg.max_positions:
            return self._reject(proposal, f"Max positions reached: {portfolio.open_positions}/{cfg.max_positions}")

        position_value = proposal.shares * proposal.price
        max_allowed = cfg.max_position_size_pct * portfolio.portfolio_value
        if position_value > max_allowed:
            return self._reject(
                proposal,
                f"Position size ${position_value:.2f} exceeds max ${max_allowed:.2f} "
                f"({cfg.max_position_size_pct * 100:.1f}% of portfolio)",
            )

        trade_risk = position_value * proposal.stop_loss_pct
        max_risk = cfg.max_risk_per_trade_pct * portfolio.portfolio_value
        if trade_risk > max_risk:
            return self._reject(
                proposal,
                f"Trade risk ${trade_risk:.2f} exceeds max ${max_risk:.2f} "
                f"({cfg.max_risk_per_trade_pct * 100:.1f}% of portfolio)",
            )

        if proposal.sector:
            sector_count = portfolio.sector_exposure.get(proposal.sector, 0)
            if sector_count >= cfg.max_sector_concentration:
                return self._reject(
                    proposal,
                    f"Sector '{proposal.sector}' already has {sector_count}/{cfg.max_sector_concentration} positions",
                )

            sector_value_pct = portfolio.sector_exposure_value.get(proposal.sector, 0.0)
            if sector_value_pct >= cfg.max_sector_value_pct:
                return self._reject(
                    proposal,
                    f"Sector '{proposal.sector}' value {sector_value_pct * 100:.1f}% exceeds max "
                    f"{cfg.max_sector_value_pct * 100:.1f}%",
                )

        if position_value > portfolio.cash_available:
            return self._reject(
                proposal,
                f"Insufficient cash: need ${position_value:.2f}, have ${portfolio.cash_available:.2f}",
            )

        self._log.debug("trade_validated", symbol=proposal.symbol, side=proposal.side)
        return ValidationResult(True)

    def check_daily_loss(self, portfolio: PortfolioState) -> bool:
        """True when today's loss breaches the limit and trading should pause."""
        limit = self._cfg.daily_loss_limit_pct
        should_pause = portfolio.today_pnl_pct < -limit
        if should_pause:
            self._log.warning("daily_loss_limit_breached", today_pnl_pct=portfolio.today_pnl_pct, limit=-limit)
        return should_pause

    def check_drawdown(self, portfolio: PortfolioState) -> bool:
        if portfolio.peak_value <= 0:
            return False
        drawdown = (portfolio.peak_value - portfolio.portfolio_value) / portfolio.peak_value
        should_alert = drawdown > self._cfg.max_drawdown_alert_pct
        if should_alert:
            self._log.warning(
                "drawdown_alert",
                drawdown=round(drawdown, 4),
                limit=self._cfg.max_drawdown_alert_pct,
                peak_value=portfolio.peak_value,
                current_value=portfolio.portfolio_value,
            )
        return should_alert

    def losing_streak_multiplier(self) -> float:
        """Position-size multiplier after consecutive losing trades.

        With threshold=3 and factor=0.5: 0-2 losses -> 1.0, 3-5 -> 0.5, 6-8 -> 0.25.
        """
        threshold = self._cfg.streak_reduction_threshold
        factor = self._cfg.streak_reduction_factor
        if not threshold or threshold <= 0 or not factor or factor <= 0 or factor >= 1:
            return 1.0

        try:
            recent = self._trades.list_closed(limit=self._cfg.streak_lookback_trades)
        except Exception as e:
            self._log.error("losing_streak_lookup_failed", error=str(e))
            return 1.0

        consecutive = 0
        for trade in recent:
            if not _is_loss(trade):
                break
            consecutive += 1

        if consecutive < threshold:
            return 1.0

        multiplier = math.pow(factor, consecutive // threshold)
        self._log.info(
            "losing_streak_size_reduction",
            consecutive_losses=consecutive,
            threshold=threshold,
            factor=factor,
            multiplier=multiplier,
        )
        return multiplier
