"""Server class ranking, bid strategies and cost estimation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from enum import Enum

from spotcycle.config import Weights
from spotcycle.exceptions import ValidationError
from spotcycle.models import ServerClass

logger = logging.getLogger("spotcycle.pricing")

METRICS = ("cpu-only", "cpu+mem", "cpu+mem+gpu", "custom")
DEFAULT_METRIC = "cpu+mem+gpu"

# Used when no market sample is available.
DEFAULT_BID_PRICE = 0.03

# Multiplier on market price below which a resume suggests raising the bid.
RECOMMENDED_MARKUP = 0.10

HOURS_PER_MONTH = 24 * 30


class BidStrategy(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    CUSTOM = "custom"

    @property
    def markup(self) -> float | None:
        return _MARKUPS.get(self)

    @property
    def label(self) -> str:
        if self is BidStrategy.CUSTOM:
            return "Custom bid amount"
        return f"{self.value.capitalize()} (market price + {int(self.markup * 100)}%)"


_MARKUPS = {
    BidStrategy.CONSERVATIVE: 0.10,
    BidStrategy.BALANCED: 0.25,
    BidStrategy.AGGRESSIVE: 0.50,
}


def adjust_weights_for_metric(
    metric: str, vcpu_weight: float, mem_weight: float, gpu_weight: float
) -> tuple[float, float, float]:
    """Zero out the weights the metric ignores.

    ``cpu-only`` keeps the vCPU weight, ``cpu+mem`` keeps vCPU and memory,
    ``cpu+mem+gpu`` and ``custom`` keep all three as configured.
    """
    if metric == "cpu-only":
        return (vcpu_weight, 0, 0)
    if metric == "cpu+mem":
        return (vcpu_weight, mem_weight, 0)
    if metric in ("cpu+mem+gpu", "custom"):
        return (vcpu_weight, mem_weight, gpu_weight)
    raise ValidationError(
        f"Invalid metric option '{metric}'. Valid options: {', '.join(METRICS)}"
    )


def score_server_class(
    vcpu: float,
    memory_gb: float,
    price_per_hour: float,
    gpu_count: float = 0,
    weights: tuple[float, float, float] = (1.0, 0.5, 4.0),
) -> float | None:
    """Price per weighted unit of capacity (lower is better).

    Returns None when the weighted capacity is not positive, so a candidate
    with no countable resources is excluded rather than scored as free.
    """
    vw, mw, gw = weights
    denominator = vw * vcpu + mw * memory_gb + gw * gpu_count
    if denominator <= 0:
        return None
    return price_per_hour / denominator


def rank_server_classes(
    server_classes: Iterable[ServerClass],
    metric: str = DEFAULT_METRIC,
    weights: Weights | None = None,
) -> list[ServerClass]:
    """Score every candidate and return them best first.

    Ties on score are broken by the lexical order of the class code.
    """
    weights = weights or Weights()
    active = adjust_weights_for_metric(metric, *weights.as_tuple())
    scored: list[ServerClass] = []
    for sc in server_classes:
        score = score_server_class(sc.vcpu, sc.memory_gb, sc.price_per_hour, sc.gpu_count, active)
        if score is None:
            logger.warning("Invalid denominator for %s under metric %s, skipping", sc.code, metric)
            continue
        scored.append(replace(sc, score=score))
    if not scored:
        logger.warning("No valid server classes found")
    scored.sort(key=lambda sc: (sc.score, sc.code))
    return scored


def rank(
    server_classes: Iterable[ServerClass],
    metric: str = DEFAULT_METRIC,
    weights: Weights | None = None,
) -> list[tuple[str, float]]:
    """Ranked ``(code, score)`` pairs, best first."""
    return [(sc.code, sc.score) for sc in rank_server_classes(server_classes, metric, weights)]


def compute_bid(strategy: BidStrategy | str, market_price: float, custom: float | str | None = None) -> float:
    """Bid for a strategy over the freshest market price, rounded to 3 places."""
    try:
        strategy = BidStrategy(strategy)
    except ValueError:
        valid = ", ".join(s.value for s in BidStrategy)
        raise ValidationError(f"Unknown bid strategy '{strategy}'. Valid options: {valid}") from None

    if strategy is BidStrategy.CUSTOM:
        try:
            bid = float(custom) if custom is not None else None
        except (TypeError, ValueError):
            bid = None
        if bid is None or bid <= 0:
            raise ValidationError(f"Custom bid must be a positive number, got {custom!r}")
        return round(bid, 3)

    if market_price <= 0:
        raise ValidationError(f"Market price must be positive, got {market_price}")
    return round(market_price * (1 + strategy.markup), 3)


def recommended_bid(market_price: float) -> float:
    return round(market_price * (1 + RECOMMENDED_MARKUP), 3)


def bid_below_recommendation(current_bid: float, market_price: float) -> bool:
    return current_bid < market_price * (1 + RECOMMENDED_MARKUP)


def estimate_cost(spot_price_per_hour: float, minutes: float) -> float:
    """Estimate total cost given a spot price and duration in minutes."""
    return spot_price_per_hour * (minutes / 60.0)


def monthly_cost(spot_price_per_hour: float, nodes: int = 1) -> float:
    """Approximate monthly cost (30 days of continuous running)."""
    return round(spot_price_per_hour * HOURS_PER_MONTH * nodes, 2)
