from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from .schemas import PhysicalEvaluationInput

HUMIDITY_MIN = 3.5
HUMIDITY_MAX = 8.0
BROKEN_GRAINS_MAX = 10.0
FLAT_GRAINS_WARNING = 15.0
FERMENTED_MIN = 60.0
PURPLE_BEANS_MAX = 15.0


@dataclass
class PhysicalVerdict:
    global_evaluation: str
    disqualification_reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.global_evaluation == "passed"

    def to_dict(self) -> dict:
        return {
            "global_evaluation": self.global_evaluation,
            "disqualification_reasons": list(self.disqualification_reasons),
            "warnings": list(self.warnings),
        }


def _pct(v: float) -> str:
    return f"{v:g}%"


def evaluate_physical(data: PhysicalEvaluationInput) -> PhysicalVerdict:
    """
    Screen a bean sample before sensory evaluation.

    Any failed rule disqualifies the sample. Flat grains only raise a warning.
    """
    reasons: List[str] = []
    warnings: List[str] = []

    if data.has_undesirable_aromas and data.undesirable_aromas:
        reasons.append(f"Undesirable aromas detected: {', '.join(data.undesirable_aromas)}")

    h = data.percentage_humidity
    if h < HUMIDITY_MIN or h > HUMIDITY_MAX:
        reasons.append(
            f"Humidity ({_pct(h)}) outside acceptable range ({_pct(HUMIDITY_MIN)}-{_pct(HUMIDITY_MAX)})"
        )

    if data.broken_grains > BROKEN_GRAINS_MAX:
        reasons.append(f"Broken grains ({_pct(data.broken_grains)}) exceeds maximum ({_pct(BROKEN_GRAINS_MAX)})")

    if data.violated_grains:
        reasons.append("Violated grains detected")

    if data.flat_grains > FLAT_GRAINS_WARNING:
        warnings.append(
            f"Flat grains ({_pct(data.flat_grains)}) exceeds warning threshold ({_pct(FLAT_GRAINS_WARNING)})"
        )

    if data.affected_grains_insects >= 1:
        reasons.append(f"Affected grains/insects ({data.affected_grains_insects}) detected")

    fermented = data.well_fermented_beans + data.lightly_fermented_beans
    if fermented < FERMENTED_MIN:
        reasons.append(
            f"Well-fermented + Lightly fermented ({_pct(fermented)}) below minimum ({_pct(FERMENTED_MIN)})"
        )

    if data.purple_beans > PURPLE_BEANS_MAX:
        reasons.append(f"Purple beans ({_pct(data.purple_beans)}) exceeds maximum ({_pct(PURPLE_BEANS_MAX)})")

    # zero tolerance
    for label, value in (
        ("Slaty beans", data.slaty_beans),
        ("Internal moldy beans", data.internal_moldy_beans),
        ("Over-fermented beans", data.over_fermented_beans),
    ):
        if value > 0:
            reasons.append(f"{label} ({_pct(value)}) exceeds maximum (0%)")

    return PhysicalVerdict(
        global_evaluation="disqualified" if reasons else "passed",
        disqualification_reasons=reasons,
        warnings=warnings,
    )
