from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..utils.clock import ensure_aware

SCORE_BUCKETS = (1, 2, 3, 4, 5)


def empty_distribution() -> dict[int, int]:
    return {bucket: 0 for bucket in SCORE_BUCKETS}


@dataclass(frozen=True)
class Aggregate:
    """Statistics derived from a restaurant's visible ratings.

    Always re-derivable from the rating set. ``computed_at`` is bookkeeping
    and does not take part in equality.
    """

    restaurant_id: str
    average_score: float = 0.0
    weighted_average: float = 0.0
    total_ratings: int = 0
    distribution: dict[int, int] = field(default_factory=empty_distribution)
    confidence_score: float = 0.0
    standard_deviation: float = 0.0
    median: float = 0.0
    mode: int = 0
    computed_at: Optional[datetime] = field(default=None, compare=False)
    is_from_offline_cache: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["distribution"] = {str(k): v for k, v in self.distribution.items()}
        data["computed_at"] = self.computed_at.isoformat() if self.computed_at else None
        return data

    def summary_patch(self) -> dict[str, Any]:
        """Denormalized columns written onto the restaurant record."""
        data = self.to_dict()
        data.pop("restaurant_id")
        data.pop("is_from_offline_cache")
        data["rating_last_updated"] = data.pop("computed_at")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Aggregate":
        computed_at = data.get("computed_at")
        if isinstance(computed_at, str):
            computed_at = ensure_aware(datetime.fromisoformat(computed_at))
        distribution = empty_distribution()
        for key, count in (data.get("distribution") or {}).items():
            distribution[int(key)] = int(count)
        return cls(
            restaurant_id=data["restaurant_id"],
            average_score=float(data.get("average_score", 0.0)),
            weighted_average=float(data.get("weighted_average", 0.0)),
            total_ratings=int(data.get("total_ratings", 0)),
            distribution=distribution,
            confidence_score=float(data.get("confidence_score", 0.0)),
            standard_deviation=float(data.get("standard_deviation", 0.0)),
            median=float(data.get("median", 0.0)),
            mode=int(data.get("mode", 0)),
            computed_at=computed_at,
            is_from_offline_cache=bool(data.get("is_from_offline_cache", False)),
        )


@dataclass(frozen=True)
class RatingStatistics:
    aggregate: Aggregate
    recent_ratings: list[dict[str, Any]]
    trend: str
    consistency: float
