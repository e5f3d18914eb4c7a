"""
Repository for ``market_orders``.

Listings are upserted on ``(order_id, connected_realm_id)``; an order seen
in consecutive snapshots only has its ``last_seen_at`` (and quantity /
price, if changed) refreshed.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from wow_harvester.db.repositories.base import BaseRepository
from wow_harvester.models.market import AuctionOrder


class MarketOrderRepository(BaseRepository):
    """Read/write access to the ``market_orders`` table."""

    def upsert_many(self, orders: Iterable[AuctionOrder]) -> int:
        params = [
            (
                o.order_id,
                o.connected_realm_id,
                o.item_id,
                o.quantity,
                o.unit_price,
                o.buyout,
                o.bid,
                o.time_left,
                o.last_seen_at.isoformat(),
            )
            for o in orders
        ]
        if not params:
            return 0
        self.executemany(
            """
            INSERT INTO market_orders (
                order_id, connected_realm_id, item_id, quantity,
                unit_price, buyout, bid, time_left, last_seen_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(order_id, connected_realm_id) DO UPDATE SET
                quantity     = excluded.quantity,
                unit_price   = excluded.unit_price,
                buyout       = excluded.buyout,
                bid          = excluded.bid,
                time_left    = excluded.time_left,
                last_seen_at = excluded.last_seen_at;
            """,
            params,
        )
        return len(params)

    def for_item(self, item_id: int, connected_realm_id: int) -> list[AuctionOrder]:
        rows = self.fetchall(
            """
            SELECT * FROM market_orders
            WHERE item_id = ? AND connected_realm_id = ?
            ORDER BY COALESCE(unit_price, buyout) ASC;
            """,
            (item_id, connected_realm_id),
        )
        return [
            AuctionOrder(
                order_id=r["order_id"],
                connected_realm_id=r["connected_realm_id"],
                item_id=r["item_id"],
                quantity=r["quantity"],
                unit_price=r["unit_price"],
                buyout=r["buyout"],
                bid=r["bid"],
                time_left=r["time_left"],
                last_seen_at=datetime.fromisoformat(r["last_seen_at"]),
            )
            for r in rows
        ]

    def count(self, connected_realm_id: int | None = None) -> int:
        if connected_realm_id is None:
            return self.count_rows("market_orders")
        return self.count_rows("market_orders", "connected_realm_id = ?", (connected_realm_id,))
