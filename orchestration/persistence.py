import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from strategy.models import DcaOrder, DcaType, Position


logger = logging.getLogger(__name__)


class PositionStore:
    """Positions and DCA orders kept in memory and snapshotted to a JSON file.

    Ids are assigned on save and never reused. The snapshot is rewritten in full
    after each change; a missing or unreadable file starts an empty store.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._positions: Dict[int, Position] = {}
        self._dca_orders: List[DcaOrder] = []
        self._next_id = 1
        self._lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
            for item in data.get('positions', []):
                position = Position.from_dict(item)
                self._positions[position.id] = position
            self._next_id = int(data.get('next_id') or (max(self._positions, default=0) + 1))
            self._dca_orders = [self._dca_from_dict(item) for item in data.get('dca_orders', [])]
            logger.info("Restored %s positions from %s", len(self._positions), self.path)
        except Exception as exc:
            logger.warning("Position snapshot restore failed: %s", exc)

    def _persist(self) -> None:
        if self.path is None:
            return
        snapshot = {
            'next_id': self._next_id,
            'positions': [p.to_dict() for p in self._positions.values()],
            'dca_orders': [o.to_dict() for o in self._dca_orders],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + '.tmp')
            tmp.write_text(json.dumps(snapshot, indent=2))
            tmp.replace(self.path)
        except Exception as exc:
            logger.error("Position snapshot persist failed: %s", exc)

    def _assign_id(self) -> int:
        new_id = self._next_id
        self._next_id += 1
        return new_id

    async def save_position(self, position: Position) -> int:
        async with self._lock:
            if position.id is None:
                position.id = self._assign_id()
            self._positions[position.id] = position
            self._persist()
            return position.id

    async def update_position(self, position: Position) -> None:
        async with self._lock:
            if position.id is None or position.id not in self._positions:
                raise KeyError(f"Unknown position id {position.id}")
            self._positions[position.id] = position
            self._persist()

    async def save_dca_order(self, order: DcaOrder) -> int:
        async with self._lock:
            if order.id is None:
                order.id = self._assign_id()
            self._dca_orders.append(order)
            self._persist()
            return order.id

    async def get_open_position_count(self, symbol: Optional[str] = None) -> int:
        return len(await self.get_open_positions(symbol))

    async def get_open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        return [
            p for p in self._positions.values()
            if p.is_open and (symbol is None or p.symbol == symbol)
        ]

    async def get_positions(self) -> List[Position]:
        return list(self._positions.values())

    async def get_dca_orders(self) -> List[DcaOrder]:
        return list(self._dca_orders)

    @staticmethod
    def _dca_from_dict(item: Dict) -> DcaOrder:
        return DcaOrder(
            id=item.get('id'),
            symbol=item['symbol'],
            amount_usd=float(item['amount_usd']),
            price=float(item['price']),
            quantity=float(item['quantity']),
            type=DcaType(item.get('type', DcaType.WEEKLY.value)),
            order_id=item.get('order_id'),
            reason=item.get('reason') or "",
            executed_at=float(item.get('executed_at') or 0.0),
        )
