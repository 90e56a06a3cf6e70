"""Sensory scoring engine.

Turns a judge's raw slider values (0-10) into group sub-totals, a defect
penalty and a final 0-10 quality score. Two rule sets exist:

- cocoa beans / cocoa liquor: weighted group sums, mean of twelve positive
  attributes, proportional defect penalty
- chocolate: five categories averaged then weighted
  (flavor 40%, aroma 25%, texture 20%, aftertaste 10%, appearance 5%)

Both rule sets share the defect assessment: a defect total at or above the
disqualification threshold disqualifies the sheet regardless of the verdict
the judge picked.

Every function here is pure. Nothing is rounded; callers round for display.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from .schemas import ChocolateSensorySheet, CocoaSensorySheet, Defects, JudgeVerdict

SCORE_MIN = 0.0
SCORE_MAX = 10.0

DEFECT_KEYS = ("dirty", "animal", "rotten", "smoke", "humid", "moldy", "overfermented", "other")
DEFECT_PENALTY_FACTOR = 0.3
DEFAULT_DISQUALIFICATION_THRESHOLD = 7.0
LIGHT_DEFECT_LIMIT = 3.0

CHOCOLATE_SWEETNESS_PIVOT = 5.0
CHOCOLATE_SWEETNESS_FACTOR = 0.05

# Sub-attribute weights for the cocoa group totals, in sheet order
COCOA_GROUP_WEIGHTS: Dict[str, Dict[str, float]] = {
    "acidity": {"frutal": 1.0, "acetic": 1.0, "lactic": 1.0, "mineral_butyric": 1.0},
    "fresh_fruit": {"berries": 1.0, "citrus": 0.8, "yellow_pulp": 0.3, "dark": 0.3, "tropical": 0.3},
    "brown_fruit": {"dry": 1.0, "brown": 0.8, "overripe": 0.3},
    "vegetal": {"grass_herb": 1.0, "earthy": 0.8},
    "floral": {"orange_blossom": 1.0, "flowers": 0.8},
    "wood": {"light": 1.0, "dark": 0.8, "resin": 0.3},
    "spice": {"spices": 1.0, "tobacco": 0.8, "umami": 0.3},
    "nut": {"kernel": 1.0, "skin": 0.8},
}

COCOA_SINGLE_POSITIVES = ("cacao", "bitterness", "astringency", "caramel_panela")

CHOCOLATE_CATEGORY_WEIGHTS: Dict[str, float] = {
    "flavor": 0.40,
    "aroma": 0.25,
    "texture": 0.20,
    "aftertaste": 0.10,
    "appearance": 0.05,
}

# Scored attributes per chocolate category; descriptive notes are left out
CHOCOLATE_CATEGORY_ATTRIBUTES: Dict[str, tuple] = {
    "appearance": ("color", "gloss", "surface_homogeneity"),
    "aroma": ("aroma_intensity", "aroma_quality"),
    "texture": ("smoothness", "melting", "body"),
    "flavor": ("sweetness", "bitterness", "acidity", "flavor_intensity"),
    "aftertaste": ("persistence", "aftertaste_quality", "final_balance"),
}

Sheet = Union[CocoaSensorySheet, ChocolateSensorySheet]


class ScoringError(ValueError):
    """Raised when a sheet holds a value the engine cannot score."""


# -----------------------
# Primitives
# -----------------------
def clamp_score(value, name: str = "score") -> float:
    """Clamp a finite number into [0, 10]. Rejects bools, NaN, inf and non-numbers."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ScoringError(f"{name} must be a number, got {value!r}.")
    v = float(value)
    if math.isnan(v) or math.isinf(v):
        raise ScoringError(f"{name} must be finite, got {value!r}.")
    return max(SCORE_MIN, min(SCORE_MAX, v))


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def weighted_group_total(values: Dict[str, float], weights: Dict[str, float], name: str = "group") -> float:
    """Weighted sum of clamped sub-attributes, clamped again to 0-10."""
    total = 0.0
    for key, weight in weights.items():
        total += weight * clamp_score(values.get(key, 0.0), f"{name}.{key}")
    return clamp_score(total, name)


# -----------------------
# Defects
# -----------------------
@dataclass(frozen=True)
class DefectAssessment:
    raw_sum: float
    total: float
    penalty: float
    band: str
    threshold: float

    @property
    def disqualifying(self) -> bool:
        return self.band == "disqualifying"


def defect_band(total: float, threshold: float = DEFAULT_DISQUALIFICATION_THRESHOLD) -> str:
    if total >= threshold:
        return "disqualifying"
    if total <= 0.0:
        return "none"
    if total < min(LIGHT_DEFECT_LIMIT, threshold):
        return "light"
    return "moderate"


def assess_defects(defects: Optional[Defects], threshold: float = DEFAULT_DISQUALIFICATION_THRESHOLD) -> DefectAssessment:
    """
    Sum the eight defect intensities and derive the penalty.

    The penalty uses the unclamped sum normalized by the number of defect
    kinds (sum / 8 * 0.3) so it never exceeds 3 points. The reported total and
    the disqualification band use the sum clamped to 0-10.
    """
    if not (SCORE_MIN < threshold <= SCORE_MAX):
        raise ScoringError(f"Disqualification threshold must be within (0, 10], got {threshold}.")

    values = defects.model_dump() if defects is not None else {}
    raw_sum = sum(clamp_score(values.get(k, 0.0), f"defects.{k}") for k in DEFECT_KEYS)
    total = clamp_score(raw_sum, "defects_total")
    penalty = (raw_sum / len(DEFECT_KEYS)) * DEFECT_PENALTY_FACTOR
    return DefectAssessment(
        raw_sum=raw_sum,
        total=total,
        penalty=penalty,
        band=defect_band(total, threshold),
        threshold=threshold,
    )


# -----------------------
# Result
# -----------------------
@dataclass
class SensoryResult:
    rule_set: str
    sub_totals: Dict[str, float]
    base_score: float
    penalty: float
    bonus: float
    overall_quality: float
    defects: DefectAssessment
    verdict: str
    disqualification_reasons: List[str] = field(default_factory=list)
    breakdown: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def disqualified(self) -> bool:
        return self.verdict == "Disqualified"

    @property
    def auto_disqualified(self) -> bool:
        return self.defects.disqualifying

    def to_dict(self) -> Dict:
        return {
            "rule_set": self.rule_set,
            "sub_totals": dict(self.sub_totals),
            "base_score": self.base_score,
            "penalty": self.penalty,
            "bonus": self.bonus,
            "overall_quality": self.overall_quality,
            "defects_total": self.defects.total,
            "defect_band": self.defects.band,
            "auto_disqualified": self.auto_disqualified,
            "verdict": self.verdict,
            "disqualification_reasons": list(self.disqualification_reasons),
            "breakdown": {k: dict(v) for k, v in self.breakdown.items()},
        }


def resolve_verdict(judge_verdict: Optional[JudgeVerdict], defects: DefectAssessment):
    """Combine the judge's verdict with the automatic defect rule."""
    reasons: List[str] = []
    disqualified = False

    if judge_verdict is not None and judge_verdict.result == "Disqualified":
        disqualified = True
        reasons.extend(r.strip() for r in judge_verdict.reasons if r and r.strip())
        if judge_verdict.other_reason and judge_verdict.other_reason.strip():
            reasons.append(judge_verdict.other_reason.strip())

    if defects.disqualifying:
        disqualified = True
        reasons.append(
            f"Defects total ({defects.total:.1f}) reached disqualification threshold ({defects.threshold:.1f})"
        )

    return ("Disqualified" if disqualified else "Approved"), reasons


# -----------------------
# Cocoa bean / liquor
# -----------------------
def cocoa_group_totals(sheet: CocoaSensorySheet) -> Dict[str, float]:
    totals: Dict[str, float] = {}
    for group, weights in COCOA_GROUP_WEIGHTS.items():
        values = getattr(sheet, group).model_dump()
        totals[f"{group}_total"] = weighted_group_total(values, weights, group)
    return totals


def score_cocoa(
    sheet: CocoaSensorySheet,
    evaluation_type: str = "cocoa_mass",
    threshold: float = DEFAULT_DISQUALIFICATION_THRESHOLD,
) -> SensoryResult:
    """
    Score a cocoa bean or cocoa liquor sheet.

    overall = clamp(mean(12 positives) - defect penalty + chocolate bonus)

    The positives are cacao, bitterness, astringency, caramel/panela and the
    eight weighted group totals. Roast degree and the defects total are
    reported as sub-totals but are not positives. The sweetness bonus,
    (sweetness - 5) * 0.05, applies only when the sheet is evaluated as
    chocolate and carries a sweetness value.
    """
    if evaluation_type not in ("cocoa_mass", "chocolate"):
        raise ScoringError(f"Unknown evaluation type: {evaluation_type!r}")

    singles = {k: clamp_score(getattr(sheet, k), k) for k in COCOA_SINGLE_POSITIVES}
    groups = cocoa_group_totals(sheet)
    defects = assess_defects(sheet.defects, threshold)

    positives = list(singles.values()) + list(groups.values())
    base = _mean(positives)

    bonus = 0.0
    if evaluation_type == "chocolate" and sheet.sweetness is not None:
        sweetness = clamp_score(sheet.sweetness, "sweetness")
        bonus = (sweetness - CHOCOLATE_SWEETNESS_PIVOT) * CHOCOLATE_SWEETNESS_FACTOR

    overall = clamp_score(base - defects.penalty + bonus, "overall_quality")

    sub_totals = dict(singles)
    sub_totals["roast_degree"] = clamp_score(sheet.roast_degree, "roast_degree")
    sub_totals.update(groups)
    sub_totals["defects_total"] = defects.total

    verdict, reasons = resolve_verdict(sheet.verdict, defects)
    return SensoryResult(
        rule_set="cocoa",
        sub_totals=sub_totals,
        base_score=base,
        penalty=defects.penalty,
        bonus=bonus,
        overall_quality=overall,
        defects=defects,
        verdict=verdict,
        disqualification_reasons=reasons,
    )


# -----------------------
# Chocolate
# -----------------------
def chocolate_category_scores(sheet: ChocolateSensorySheet) -> Dict[str, float]:
    scores: Dict[str, float] = {}
    for category, attributes in CHOCOLATE_CATEGORY_ATTRIBUTES.items():
        part = getattr(sheet, category)
        scores[category] = _mean([clamp_score(getattr(part, a), f"{category}.{a}") for a in attributes])
    return scores


def chocolate_breakdown(category_scores: Dict[str, float]) -> Dict[str, Dict[str, float]]:
    breakdown: Dict[str, Dict[str, float]] = {}
    for category, weight in CHOCOLATE_CATEGORY_WEIGHTS.items():
        score = category_scores[category]
        breakdown[category] = {
            "score": score,
            "weight": weight,
            "weighted_score": score * weight,
            "percentage": weight * 100,
        }
    return breakdown


def score_chocolate(
    sheet: ChocolateSensorySheet,
    threshold: float = DEFAULT_DISQUALIFICATION_THRESHOLD,
) -> SensoryResult:
    """
    Score a chocolate sheet.

    overall = clamp(0.40 flavor + 0.25 aroma + 0.20 texture
                    + 0.10 aftertaste + 0.05 appearance - defect penalty)
    """
    categories = chocolate_category_scores(sheet)
    breakdown = chocolate_breakdown(categories)
    weighted = sum(part["weighted_score"] for part in breakdown.values())

    defects = assess_defects(sheet.defects, threshold)
    overall = clamp_score(weighted - defects.penalty, "overall_quality")

    sub_totals = dict(categories)
    sub_totals["defects_total"] = defects.total

    verdict, reasons = resolve_verdict(sheet.verdict, defects)
    return SensoryResult(
        rule_set="chocolate",
        sub_totals=sub_totals,
        base_score=weighted,
        penalty=defects.penalty,
        bonus=0.0,
        overall_quality=overall,
        defects=defects,
        verdict=verdict,
        disqualification_reasons=reasons,
        breakdown=breakdown,
    )


# -----------------------
# Dispatch
# -----------------------
def sheet_model_for(category: str):
    if category == "chocolate":
        return ChocolateSensorySheet
    if category in ("cocoa_beans", "cocoa_liquor"):
        return CocoaSensorySheet
    raise ScoringError(f"Unknown sample category: {category!r}")


def score_sheet(category: str, sheet: Sheet, threshold: float = DEFAULT_DISQUALIFICATION_THRESHOLD) -> SensoryResult:
    """Score a sheet with the rule set that matches the sample category."""
    expected = sheet_model_for(category)
    if not isinstance(sheet, expected):
        raise ScoringError(f"A {category} sample needs a {expected.__name__}, got {type(sheet).__name__}.")
    if expected is ChocolateSensorySheet:
        return score_chocolate(sheet, threshold=threshold)
    return score_cocoa(sheet, threshold=threshold)


def final_rating(judge_scores: Iterable[float]) -> float:
    """Mean of several judges' overall scores, clamped; 0 when nobody scored."""
    scores = [clamp_score(s, "judge score") for s in judge_scores]
    if not scores:
        return 0.0
    return clamp_score(_mean(scores), "final rating")
