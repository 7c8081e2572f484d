import logging
from typing import Any, Dict, Iterable, List, Optional

from strategy.models import DecisionType, Signal, SignalType, TradeDecision

logger = logging.getLogger(__name__)


class ConsensusEngine:
    """Turn same-direction agreement between strategies into a trade decision.

    A direction qualifies when at least ``min_agreement`` strategies point that
    way and their average confidence reaches ``min_confidence``. LONG is checked
    before SHORT, so LONG wins when both qualify. Stop loss and take profit come
    from the most confident contributing signal; the first one wins ties.
    """

    def __init__(
        self,
        min_agreement: int = 2,
        min_confidence: float = 60.0,
        default_position_size_usd: float = 100.0,
        default_leverage: int = 5,
    ):
        self.min_agreement = min_agreement
        self.min_confidence = min_confidence
        self.default_position_size_usd = default_position_size_usd
        self.default_leverage = default_leverage

    @classmethod
    def from_config(cls, trading_cfg: Dict[str, Any]) -> 'ConsensusEngine':
        consensus_cfg = trading_cfg.get('consensus') or {}
        return cls(
            min_agreement=int(consensus_cfg.get('min_agreement', 2)),
            min_confidence=float(consensus_cfg.get('min_confidence', 60.0)),
            default_position_size_usd=float(trading_cfg.get('default_position_size_usd', 100.0)),
            default_leverage=int(trading_cfg.get('default_leverage', 5)),
        )

    def evaluate(self, symbol: str, signals: Iterable[Signal], current_price: float) -> Optional[TradeDecision]:
        grouped = self._group(symbol, signals)
        for direction in (SignalType.LONG, SignalType.SHORT):
            group = grouped[direction]
            if len(group) < self.min_agreement:
                continue
            avg_confidence = sum(s.confidence for s in group) / len(group)
            if avg_confidence < self.min_confidence:
                logger.debug(
                    "%s %s consensus below threshold (%.2f < %.2f)",
                    symbol, direction.value, avg_confidence, self.min_confidence,
                )
                continue

            best = max(group, key=lambda s: s.confidence)
            contributors = ", ".join(f"{s.strategy} ({s.confidence:.1f}%)" for s in group)
            logger.info(
                "%s %s consensus from %s strategies, avg confidence %.2f",
                symbol, direction.value, len(group), avg_confidence,
            )
            return TradeDecision(
                symbol=symbol,
                decision=DecisionType.EXECUTE,
                direction=direction,
                entry_price=current_price,
                stop_loss=best.stop_loss,
                take_profit=best.take_profit,
                position_size_usd=self.default_position_size_usd,
                leverage=self.default_leverage,
                confidence=avg_confidence,
                strategy_scores={s.strategy: s.confidence for s in group},
                reasoning=(
                    f"{len(group)} strategies agree on {direction.value}: {contributors}. "
                    f"Levels from {best.strategy}."
                ),
            )
        return None

    def summarize(self, signals: Iterable[Signal]) -> Dict[str, Dict[str, Any]]:
        summary: Dict[str, Dict[str, Any]] = {}
        by_type: Dict[SignalType, List[Signal]] = {t: [] for t in SignalType}
        for signal in signals:
            by_type[signal.type].append(signal)
        for direction, group in by_type.items():
            if not group:
                continue
            summary[direction.value] = {
                'count': len(group),
                'avg_confidence': sum(s.confidence for s in group) / len(group),
                'max_confidence': max(s.confidence for s in group),
                'strategies': [s.strategy for s in group],
            }
        return summary

    @staticmethod
    def _group(symbol: str, signals: Iterable[Signal]) -> Dict[SignalType, List[Signal]]:
        grouped: Dict[SignalType, List[Signal]] = {SignalType.LONG: [], SignalType.SHORT: []}
        for signal in signals:
            if signal.symbol != symbol or signal.type not in grouped:
                continue
            grouped[signal.type].append(signal)
        return grouped
