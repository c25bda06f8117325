"""
Loading and validation of the similarity scoring weights.

The weights are an immutable table constructed once and passed to the
scorer. A table whose slot weights do not sum to 1.0 is rejected at
construction time rather than silently renormalized.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from .config import SCORING_WEIGHTS_PATH

logger = logging.getLogger(__name__)

WEIGHT_SUM_TOLERANCE = 1e-6

# Slots that participate in the weighted sum. similar_source_value is a
# component value (how much of the source slot a similar item earns), not a slot.
SLOT_NAMES = ("source", "genre", "keyword", "pattern", "rating", "popularity", "year")


@dataclass(frozen=True)
class ScoringWeights:
    """
    Source-dominant weighting scheme.

    Direct recommendations earn the full source slot (0.60); similar items earn
    a third of it (0.20 effective), keeping the provider's 60/20 split.
    """

    source: float = 0.60
    genre: float = 0.15
    keyword: float = 0.10
    pattern: float = 0.08
    rating: float = 0.04
    popularity: float = 0.01
    year: float = 0.02
    similar_source_value: float = 1 / 3

    def __post_init__(self) -> None:
        # Validate eagerly so a bad table fails at startup.
        for name in SLOT_NAMES:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or math.isnan(value):
                raise ValueError(f"Scoring weight '{name}' must be a number, got {value!r}")
            if value < 0:
                raise ValueError(f"Scoring weight '{name}' must be non-negative, got {value}")

        if not 0.0 <= self.similar_source_value <= 1.0:
            raise ValueError(
                f"similar_source_value must be within [0, 1], got {self.similar_source_value}"
            )

        total = self.total
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"Scoring weights sum to {total:.6f}, not 1.0")

    @property
    def total(self) -> float:
        return sum(getattr(self, name) for name in SLOT_NAMES)

    def slots(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in SLOT_NAMES}

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ScoringWeights":
        known = {f.name for f in fields(cls)}
        unknown = set(payload) - known
        if unknown:
            logger.warning(f"Ignoring unknown scoring weight keys: {sorted(unknown)}")
        return cls(**{k: float(v) for k, v in payload.items() if k in known})


DEFAULT_WEIGHTS = ScoringWeights()


def load_scoring_weights(path: str | Path | None = None) -> ScoringWeights:
    """
    Load a weights table from disk, falling back to the defaults.

    A missing or unreadable file yields DEFAULT_WEIGHTS. A readable table that
    fails validation raises ValueError.
    """
    weight_path = Path(path) if path else SCORING_WEIGHTS_PATH
    if not weight_path.exists():
        logger.debug("Scoring weights file not found at %s; using defaults", weight_path)
        return DEFAULT_WEIGHTS

    try:
        payload = json.loads(weight_path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read scoring weights from %s: %s", weight_path, exc)
        return DEFAULT_WEIGHTS

    if not isinstance(payload, dict):
        logger.warning("Scoring weights in %s must be a JSON object; using defaults", weight_path)
        return DEFAULT_WEIGHTS

    return ScoringWeights.from_dict(payload)


def save_scoring_weights(weights: ScoringWeights, path: str | Path | None = None) -> Path:
    weight_path = Path(path) if path else SCORING_WEIGHTS_PATH
    weight_path.parent.mkdir(parents=True, exist_ok=True)
    weight_path.write_text(json.dumps(weights.to_dict(), indent=2))
    return weight_path
