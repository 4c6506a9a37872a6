# trader.py
"""Market order execution and balance queries through ccxt."""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class OrderError(Exception):
    """Exchange accepted the call but the response cannot be used."""


@dataclass
class Fill:
    price: float
    quantity: float
    order_id: Optional[str] = None


def parse_fill(order: Dict, requested_qty: float) -> Fill:
    price = order.get('average') or order.get('price')
    if not price:
        fills = (order.get('info') or {}).get('fills') or []
        if fills:
            price = fills[0].get('price')
    if not price:
        raise OrderError(f"No fill price in order response {order.get('id')}")

    quantity = order.get('filled') or requested_qty
    return Fill(price=float(price), quantity=float(quantity), order_id=order.get('id'))


class Trader:
    def __init__(self, exchange, symbol: str):
        self.exchange = exchange
        self.symbol = symbol

    @property
    def base_asset(self) -> str:
        return self.symbol.split('/')[0]

    async def market_buy(self, quantity: float) -> Fill:
        logger.info(f"Submitting market BUY {quantity} {self.symbol}")
        order = await self.exchange.create_market_buy_order(self.symbol, quantity)
        return parse_fill(order, quantity)

    async def market_sell(self, quantity: float) -> Fill:
        logger.info(f"Submitting market SELL {quantity} {self.symbol}")
        order = await self.exchange.create_market_sell_order(self.symbol, quantity)
        return parse_fill(order, quantity)

    async def free_balance(self) -> float:
        balance = await self.exchange.fetch_balance()
        free = (balance.get('free') or {}).get(self.base_asset)
        return float(free or 0.0)

    async def server_time(self) -> int:
        return await self.exchange.fetch_time()

    async def close(self):
        await self.exchange.close()


@dataclass
class PendingOrder:
    side: str
    reason: str
    created_at: float = field(default_factory=time.time)
    cancelled: bool = False


class PendingOrders:
    """At most one delayed submission per side ('buy' / 'sell')."""

    SIDES = ('buy', 'sell')

    def __init__(self):
        self._orders: Dict[str, PendingOrder] = {}

    def is_pending(self, side: str) -> bool:
        return side in self._orders

    def reserve(self, side: str, reason: str) -> Optional[PendingOrder]:
        if side not in self.SIDES:
            raise ValueError(f"Unknown order side: {side}")
        if side in self._orders:
            return None
        order = PendingOrder(side=side, reason=reason)
        self._orders[side] = order
        return order

    def complete(self, order: PendingOrder):
        if self._orders.get(order.side) is order:
            del self._orders[order.side]

    def cancel(self, side: Optional[str] = None) -> List[PendingOrder]:
        sides = [side] if side else list(self._orders)
        cancelled = []
        for s in sides:
            order = self._orders.pop(s, None)
            if order:
                order.cancelled = True
                cancelled.append(order)
        return cancelled

    def pending(self) -> List[PendingOrder]:
        return list(self._orders.values())
