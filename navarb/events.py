"""Chain-event payloads accepted by the monitor.

Raw payloads arrive as loosely-typed dicts from the event feed. They are
validated here into a closed set of tagged variants before anything reaches
the sizing engine. Integers may arrive as decimal strings (uint256 values
do not fit a JSON number safely).
"""
from __future__ import annotations

__all__ = ["PriceChanged", "NavUpdated", "ChainEvent", "parse_event"]

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class PriceChanged(BaseModel):
    """A swap moved the pool price."""
    kind: Literal["price_changed"] = "price_changed"
    pool_id: str
    sqrt_price_x96: int | None = Field(None, gt=0)
    tick: int | None = None
    liquidity: int | None = Field(None, ge=0)
    block_number: int | None = Field(None, ge=0)
    tx_ref: str | None = None


class NavUpdated(BaseModel):
    """The vault share price (reference price) changed."""
    kind: Literal["nav_updated"] = "nav_updated"
    pool_id: str
    share_price: int = Field(..., gt=0, description="Reference price, E18")
    block_number: int | None = Field(None, ge=0)


ChainEvent = Annotated[Union[PriceChanged, NavUpdated], Field(discriminator="kind")]

_adapter: TypeAdapter = TypeAdapter(ChainEvent)


def parse_event(payload: dict[str, Any]) -> PriceChanged | NavUpdated:
    """Raises ``pydantic.ValidationError`` for unknown kinds or bad fields."""
    return _adapter.validate_python(payload)
