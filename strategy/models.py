from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence
import time


class SignalType(Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"


class DecisionType(Enum):
    EXECUTE = "EXECUTE"
    NO_ACTION = "NO_ACTION"


class DecisionStatus(Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"


class PositionStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"


class DcaType(Enum):
    WEEKLY = "WEEKLY"
    DAILY = "DAILY"
    LIQUIDITY_ZONE = "LIQUIDITY_ZONE"


@dataclass(frozen=True)
class Candle:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    symbol: str = ""

    @classmethod
    def from_row(cls, row: Sequence[Any], symbol: str = "") -> 'Candle':
        """Build from an exchange row ``[ts, open, high, low, close, baseVolume, ...]``."""
        if len(row) < 6:
            raise ValueError(f"Candle row needs 6 fields, got {len(row)}")
        return cls(
            timestamp=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            symbol=symbol,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
            'symbol': self.symbol,
        }


@dataclass(frozen=True)
class Signal:
    symbol: str
    strategy: str
    type: SignalType
    entry_price: float
    stop_loss: float
    take_profit: float
    confidence: float
    reason: str = ""
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'strategy': self.strategy,
            'type': self.type.value,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'confidence': self.confidence,
            'reason': self.reason,
            'timestamp': int(self.timestamp * 1000),
            'metadata': dict(self.metadata),
        }


@dataclass
class TradeDecision:
    """Outcome of a consensus pass. Resolved exactly once."""

    symbol: str
    decision: DecisionType
    direction: Optional[SignalType]
    entry_price: float
    stop_loss: float
    take_profit: float
    position_size_usd: float
    leverage: int
    confidence: float
    strategy_scores: Dict[str, float] = field(default_factory=dict)
    reasoning: str = ""
    status: DecisionStatus = DecisionStatus.PENDING
    timestamp: float = field(default_factory=time.time)
    resolution: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status is DecisionStatus.PENDING

    def mark_executed(self) -> None:
        self._resolve(DecisionStatus.EXECUTED, None)

    def mark_rejected(self, reason: str) -> None:
        self._resolve(DecisionStatus.REJECTED, reason)

    def _resolve(self, status: DecisionStatus, reason: Optional[str]) -> None:
        if self.status is not DecisionStatus.PENDING:
            raise RuntimeError(f"Decision for {self.symbol} already {self.status.value}")
        self.status = status
        self.resolution = reason

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'TradeDecision':
        """Parse a decision posted by an external agent (API or webhook)."""
        direction = payload.get('direction')
        return cls(
            symbol=str(payload['symbol']).upper(),
            decision=DecisionType(str(payload.get('decision', 'NO_ACTION')).upper()),
            direction=SignalType(str(direction).upper()) if direction else None,
            entry_price=float(payload.get('entry_price') or 0.0),
            stop_loss=float(payload.get('stop_loss') or 0.0),
            take_profit=float(payload.get('take_profit') or 0.0),
            position_size_usd=float(payload.get('position_size_usd') or 0.0),
            leverage=int(payload.get('leverage') or 1),
            confidence=float(payload.get('confidence') or 0.0),
            strategy_scores={k: float(v) for k, v in (payload.get('strategy_scores') or {}).items()},
            reasoning=str(payload.get('reasoning') or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'decision': self.decision.value,
            'direction': self.direction.value if self.direction else None,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'position_size_usd': self.position_size_usd,
            'leverage': self.leverage,
            'confidence': self.confidence,
            'strategy_scores': dict(self.strategy_scores),
            'reasoning': self.reasoning,
            'status': self.status.value,
            'timestamp': int(self.timestamp * 1000),
            'resolution': self.resolution,
        }


@dataclass
class Position:
    symbol: str
    strategy: str
    side: str
    entry_price: float
    size: float
    stop_loss: float
    take_profit: float
    leverage: int = 1
    order_id: Optional[str] = None
    market: str = "futures"
    status: PositionStatus = PositionStatus.OPEN
    open_time: float = field(default_factory=time.time)
    id: Optional[int] = None
    exit_price: Optional[float] = None
    close_time: Optional[float] = None
    close_order_id: Optional[str] = None
    pnl: float = 0.0
    pnl_percent: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.symbol}_{self.strategy}"

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    def calculate_pnl(self, exit_price: float) -> float:
        if self.side == 'long':
            return (exit_price - self.entry_price) * self.size
        return (self.entry_price - exit_price) * self.size

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'strategy': self.strategy,
            'side': self.side,
            'entry_price': self.entry_price,
            'size': self.size,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'leverage': self.leverage,
            'order_id': self.order_id,
            'market': self.market,
            'status': self.status.value,
            'open_time': self.open_time,
            'exit_price': self.exit_price,
            'close_time': self.close_time,
            'close_order_id': self.close_order_id,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        return cls(
            id=data.get('id'),
            symbol=data['symbol'],
            strategy=data['strategy'],
            side=data['side'],
            entry_price=float(data['entry_price']),
            size=float(data['size']),
            stop_loss=float(data['stop_loss']),
            take_profit=float(data['take_profit']),
            leverage=int(data.get('leverage') or 1),
            order_id=data.get('order_id'),
            market=data.get('market') or 'futures',
            status=PositionStatus(data.get('status', PositionStatus.OPEN.value)),
            open_time=float(data.get('open_time') or time.time()),
            exit_price=data.get('exit_price'),
            close_time=data.get('close_time'),
            close_order_id=data.get('close_order_id'),
            pnl=float(data.get('pnl') or 0.0),
            pnl_percent=float(data.get('pnl_percent') or 0.0),
        )


@dataclass
class DcaOrder:
    symbol: str
    amount_usd: float
    price: float
    quantity: float
    type: DcaType = DcaType.WEEKLY
    order_id: Optional[str] = None
    reason: str = ""
    executed_at: float = field(default_factory=time.time)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'amount_usd': self.amount_usd,
            'price': self.price,
            'quantity': self.quantity,
            'type': self.type.value,
            'order_id': self.order_id,
            'reason': self.reason,
            'executed_at': self.executed_at,
        }
