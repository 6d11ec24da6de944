"""
Target metric evaluation

A bounty is won by every participant whose final score satisfies
``score <comparison> target``. Evaluation is exact Decimal comparison; no
rounding is applied to either side.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Union

from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import InvalidBountyParams, InvalidScore

HUNDRED = Decimal("100")
NOT_ACHIEVED_CAP = Decimal("99.99")


class TargetComparison(Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUAL_TO = "equal_to"


def parse_score(value: Union[str, int, float, Decimal], participant_id: str = "") -> Decimal:
    """Boundary validation for pushed scores: finite numbers only, bools rejected"""
    try:
        return MonetaryDecimal.to_score(value, context=f"score for {participant_id}" if participant_id else "score")
    except ValueError as e:
        raise InvalidScore(str(e), participant_id=participant_id, score=repr(value)) from e


@dataclass(frozen=True)
class TargetMetric:
    target: Decimal
    comparison: TargetComparison

    @classmethod
    def from_params(cls, target: Any, comparison: Any) -> "TargetMetric":
        """Validated construction from caller input"""
        try:
            comparison_enum = comparison if isinstance(comparison, TargetComparison) else TargetComparison(comparison)
        except ValueError as e:
            raise InvalidBountyParams(f"Unknown target comparison: {comparison!r}") from e

        try:
            target_value = MonetaryDecimal.to_score(target, context="target")
        except ValueError as e:
            raise InvalidBountyParams(f"Invalid target value: {e}") from e

        return cls(target=target_value, comparison=comparison_enum)

    @classmethod
    def from_json(cls, data: Dict[str, str]) -> "TargetMetric":
        return cls(target=Decimal(data["target"]), comparison=TargetComparison(data["comparison"]))

    def to_json(self) -> Dict[str, str]:
        # Target is stored as a string so JSON never turns it into a float
        return {"target": str(self.target), "comparison": self.comparison.value}

    def evaluate(self, score: Decimal) -> bool:
        """True when ``score`` meets the target"""
        if self.comparison is TargetComparison.GREATER_THAN:
            return score > self.target
        if self.comparison is TargetComparison.LESS_THAN:
            return score < self.target
        return score == self.target

    def ranking_key(self, score: Decimal) -> Decimal:
        """Sort key, smaller is better"""
        if self.comparison is TargetComparison.GREATER_THAN:
            return -score
        if self.comparison is TargetComparison.LESS_THAN:
            return score
        return abs(score - self.target)

    def progress(self, score: Decimal) -> Decimal:
        """
        Percentage towards the target with 2 decimals.

        Exactly 100 when the target is met and at most 99.99 otherwise, so the
        figure never disagrees with ``evaluate``. Ratios are only meaningful
        for positive values; anything else reads as 0 until achieved.
        """
        if self.evaluate(score):
            return MonetaryDecimal.quantize_percent(HUNDRED)

        if self.comparison is TargetComparison.GREATER_THAN:
            raw = score / self.target * HUNDRED if self.target > 0 else Decimal("0")
        elif self.comparison is TargetComparison.LESS_THAN:
            raw = self.target / score * HUNDRED if self.target > 0 and score > 0 else Decimal("0")
        else:
            # Closeness: 0 once the miss is as large as the target itself
            raw = HUNDRED - abs(score - self.target) / abs(self.target) * HUNDRED if self.target else Decimal("0")

        clamped = min(max(raw, Decimal("0")), NOT_ACHIEVED_CAP)
        return MonetaryDecimal.quantize_percent(clamped)

    def describe(self) -> str:
        symbol = {
            TargetComparison.GREATER_THAN: ">",
            TargetComparison.LESS_THAN: "<",
            TargetComparison.EQUAL_TO: "==",
        }[self.comparison]
        return f"score {symbol} {self.target}"
