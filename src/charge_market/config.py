# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Configuration for the Charge Market core.

This module provides configuration classes for the reservation state machine,
the expiry reconciler and the dynamic pricing engine. Every tunable is a
dataclass field so operators can retune without a redeploy, either by
constructing the dataclasses directly or through MarketConfig.from_env().
"""

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from .exceptions import ConfigurationError

_DECIMAL_FIELDS = (
    "occupancy_high_threshold",
    "occupancy_high_delta",
    "occupancy_mid_threshold",
    "occupancy_mid_delta",
    "occupancy_low_threshold",
    "occupancy_low_delta",
    "demand_high_ratio",
    "demand_high_delta",
    "demand_low_ratio",
    "demand_low_delta",
    "peak_delta",
    "off_peak_delta",
    "min_multiplier",
    "max_multiplier",
)


def _to_decimal(value: Any) -> Decimal:
    """Convert config input to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class PricingConfig:
    """
    Tunables for the dynamic pricing engine.

    Adjustments are additive deltas applied to a multiplier that starts at
    1.0, then clamped to [min_multiplier, max_multiplier]. Numeric fields
    accept int, float, str or Decimal and are normalised to Decimal.
    """

    # === Occupancy adjustment (first matching band wins) ===

    occupancy_high_threshold: Decimal = Decimal("0.8")
    """Occupancy rate above which the high delta applies."""

    occupancy_high_delta: Decimal = Decimal("0.20")

    occupancy_mid_threshold: Decimal = Decimal("0.6")
    """Occupancy rate above which the mid delta applies."""

    occupancy_mid_delta: Decimal = Decimal("0.10")

    occupancy_low_threshold: Decimal = Decimal("0.3")
    """Occupancy rate below which the low delta applies."""

    occupancy_low_delta: Decimal = Decimal("-0.15")

    # === Hourly demand adjustment ===

    demand_high_ratio: Decimal = Decimal("1.5")
    """Current-hour / all-hours demand ratio above which demand_high_delta applies."""

    demand_high_delta: Decimal = Decimal("0.15")

    demand_low_ratio: Decimal = Decimal("0.7")
    """Current-hour / all-hours demand ratio below which demand_low_delta applies."""

    demand_low_delta: Decimal = Decimal("-0.10")

    # === Time of day ===

    peak_hours: frozenset[int] = frozenset({7, 8, 9, 17, 18, 19, 20})
    """Hours (0-23, inclusive) that receive the peak delta."""

    peak_delta: Decimal = Decimal("0.10")

    off_peak_hours: frozenset[int] = frozenset({22, 23, 0, 1, 2, 3, 4, 5, 6})
    """Hours (0-23, inclusive) that receive the off-peak delta."""

    off_peak_delta: Decimal = Decimal("-0.20")

    # === Clamp ===

    min_multiplier: Decimal = Decimal("0.70")
    max_multiplier: Decimal = Decimal("1.40")

    # === Demand snapshot inputs ===

    history_days: int = 30
    """Number of most recent daily revenue periods used for hourly averages."""

    occupancy_window_hours: int = 24
    """Trailing window of session creation used for the occupancy rate."""

    def __post_init__(self) -> None:
        """Normalise numeric fields and validate configuration."""
        for name in _DECIMAL_FIELDS:
            setattr(self, name, _to_decimal(getattr(self, name)))
        self.peak_hours = frozenset(self.peak_hours)
        self.off_peak_hours = frozenset(self.off_peak_hours)

        if not 0 < self.min_multiplier <= self.max_multiplier:
            raise ValueError("min_multiplier must be positive and <= max_multiplier")
        if not (
            self.occupancy_low_threshold
            <= self.occupancy_mid_threshold
            <= self.occupancy_high_threshold
        ):
            raise ValueError("occupancy thresholds must satisfy low <= mid <= high")
        if self.demand_low_ratio > self.demand_high_ratio:
            raise ValueError("demand_low_ratio must be <= demand_high_ratio")
        for hours in (self.peak_hours, self.off_peak_hours):
            if any(not 0 <= h <= 23 for h in hours):
                raise ValueError("hours must be between 0 and 23")
        if self.peak_hours & self.off_peak_hours:
            raise ValueError("peak_hours and off_peak_hours must be disjoint")
        if self.history_days < 1:
            raise ValueError("history_days must be at least 1")
        if self.occupancy_window_hours < 1:
            raise ValueError("occupancy_window_hours must be at least 1")


@dataclass
class MarketConfig:
    """
    Configuration for the reservation manager and expiry reconciler.
    """

    # === Soft-lock ===

    soft_lock_ttl: float = 300.0
    """Duration of a soft-lock hold in seconds, fixed from the successful reserve."""

    # === Expiry reconciler ===

    sweep_interval: float = 15.0
    """Interval between reconciler sweeps in seconds. Must be shorter than soft_lock_ttl."""

    sweep_batch_size: int = 500
    """Maximum number of lapsed holds released per sweep."""

    sweep_cancel_timeout: float = 2.0
    """Timeout for waiting on the sweep task during shutdown."""

    # === Metrics and Monitoring ===

    metrics_enabled: bool = True
    """Enable metrics collection."""

    # === Namespace isolation ===

    namespace: str = "charge_market"
    """Backend namespace for multi-tenant isolation."""

    # === Pricing ===

    pricing: PricingConfig = field(default_factory=PricingConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.soft_lock_ttl <= 0:
            raise ValueError("soft_lock_ttl must be positive")
        if not 0 < self.sweep_interval < self.soft_lock_ttl:
            raise ValueError(
                "sweep_interval must be positive and shorter than soft_lock_ttl"
            )
        if self.sweep_batch_size < 1:
            raise ValueError("sweep_batch_size must be at least 1")

    @property
    def soft_lock_duration(self) -> timedelta:
        """The soft-lock TTL as a timedelta."""
        return timedelta(seconds=self.soft_lock_ttl)

    @classmethod
    def from_env(
        cls,
        prefix: str = "CHARGE_MARKET_",
        environ: Mapping[str, str] | None = None,
    ) -> "MarketConfig":
        """
        Build a configuration from environment variable overrides.

        Recognised variables are the upper-cased field names behind the prefix,
        e.g. CHARGE_MARKET_SOFT_LOCK_TTL or CHARGE_MARKET_SWEEP_INTERVAL.
        Pricing fields use a PRICING_ infix, e.g.
        CHARGE_MARKET_PRICING_MAX_MULTIPLIER. Hour sets are comma separated.

        Raises:
            ConfigurationError: If a value cannot be parsed or fails validation
        """
        env = os.environ if environ is None else environ

        market_kwargs = _collect_overrides(cls, env, prefix, exclude=("pricing",))
        pricing_kwargs = _collect_overrides(PricingConfig, env, f"{prefix}PRICING_")

        try:
            return cls(pricing=PricingConfig(**pricing_kwargs), **market_kwargs)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_hours(raw: str) -> frozenset[int]:
    return frozenset(int(part) for part in raw.split(",") if part.strip())


_PARSERS: dict[str, Callable[[str], Any]] = {
    "float": float,
    "int": int,
    "bool": _parse_bool,
    "str": str,
    "Decimal": Decimal,
    "frozenset[int]": _parse_hours,
}


def _collect_overrides(
    config_cls: type,
    env: Mapping[str, str],
    prefix: str,
    exclude: tuple[str, ...] = (),
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for f in fields(config_cls):
        if f.name in exclude:
            continue
        key = f"{prefix}{f.name.upper()}"
        if key not in env:
            continue
        type_name = f.type if isinstance(f.type, str) else getattr(f.type, "__name__", "")
        if type_name == "frozenset":
            type_name = "frozenset[int]"
        parser = _PARSERS.get(type_name, str)
        try:
            overrides[f.name] = parser(env[key])
        except (ValueError, InvalidOperation) as e:
            raise ConfigurationError(f"Invalid value for {key}: {env[key]!r}") from e
    return overrides


__all__ = [
    "MarketConfig",
    "PricingConfig",
]
