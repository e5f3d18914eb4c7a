"""
Auction house order model.

Monetary values are stored in **copper** (integer), as returned by the API.
Commodity orders are region-wide and carry ``connected_realm_id = 0``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

COMMODITIES_REALM_ID = 0
VALID_TIME_LEFT = frozenset({"SHORT", "MEDIUM", "LONG", "VERY_LONG"})


class AuctionOrder(BaseModel):
    """A single AH listing.

    Attributes:
        order_id: Blizzard auction id.
        connected_realm_id: Connected realm, or ``0`` for commodities.
        item_id: Item being sold.
        quantity: Units listed.
        unit_price: Copper per unit (commodities).
        buyout: Buyout in copper (non-commodities).
        bid: Minimum bid in copper.
        time_left: ``SHORT`` | ``MEDIUM`` | ``LONG`` | ``VERY_LONG``.
        last_seen_at: Snapshot time the listing was last present.
    """

    model_config = ConfigDict(frozen=True)

    order_id: int
    connected_realm_id: int
    item_id: int
    quantity: int = 1
    unit_price: Optional[int] = None
    buyout: Optional[int] = None
    bid: Optional[int] = None
    time_left: Optional[str] = None
    last_seen_at: datetime

    @field_validator("unit_price", "buyout", "bid")
    @classmethod
    def validate_copper_non_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("Copper monetary values must be non-negative.")
        return v

    @field_validator("time_left")
    @classmethod
    def validate_time_left(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in VALID_TIME_LEFT:
            raise ValueError(f"Unknown time_left '{v}'. Must be one of {sorted(VALID_TIME_LEFT)}.")
        return v
