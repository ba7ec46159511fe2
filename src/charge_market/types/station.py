# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Station type for the charge market."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .fields import dump_bool, load_bool, to_decimal


@dataclass
class Station:
    """
    A charging station (or host) that owns zero or more sessions.

    The station is the per-station pricing configuration passed to the
    pricer: base_price_per_kwh is the fallback price and auto_pricing_on
    switches dynamic pricing on or off.

    Attributes:
        station_id: Unique identifier
        owner_id: Operator allowed to cancel active sessions and withdraw supply
        base_price_per_kwh: Price before dynamic adjustment
        auto_pricing_on: Whether dynamic pricing applies to this station
        name: Display name
        power_kw: Nominal power of the station
    """

    station_id: str
    owner_id: str
    base_price_per_kwh: Decimal
    auto_pricing_on: bool = False
    name: str = ""
    power_kw: Decimal = Decimal(0)

    def __post_init__(self) -> None:
        self.base_price_per_kwh = to_decimal(self.base_price_per_kwh)
        self.power_kw = to_decimal(self.power_kw)

    def to_dict(self) -> dict[str, str]:
        """Serialise to a flat string mapping for backend storage."""
        return {
            "station_id": self.station_id,
            "owner_id": self.owner_id,
            "base_price_per_kwh": str(self.base_price_per_kwh),
            "auto_pricing_on": dump_bool(self.auto_pricing_on),
            "name": self.name,
            "power_kw": str(self.power_kw),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Station":
        """Rebuild a Station from a mapping produced by to_dict()."""
        return cls(
            station_id=data["station_id"],
            owner_id=data["owner_id"],
            base_price_per_kwh=to_decimal(data["base_price_per_kwh"]),
            auto_pricing_on=load_bool(data.get("auto_pricing_on", "0")),
            name=data.get("name", ""),
            power_kw=to_decimal(data.get("power_kw") or 0),
        )


__all__ = ["Station"]
