"""Input models.

Sensory attributes are 0-10 slider values. The models only check that each
value is a real number; range handling (clamping) belongs to the scoring
engine so that stored sheets can be rescored exactly as they were entered.
"""

from __future__ import annotations

from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, Field, model_validator


def _slider_value(value):
    # bools and numeric strings are not slider values
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"slider values must be numbers, got {type(value).__name__}")
    return value


Score = Annotated[float, BeforeValidator(_slider_value), Field(allow_inf_nan=False)]
EvaluationType = Literal["cocoa_mass", "chocolate"]
Verdict = Literal["Approved", "Disqualified"]


# -----------------------
# Cocoa bean / liquor sheet
# -----------------------
class Acidity(BaseModel):
    frutal: Score = 0.0
    acetic: Score = 0.0
    lactic: Score = 0.0
    mineral_butyric: Score = 0.0


class FreshFruit(BaseModel):
    berries: Score = 0.0
    citrus: Score = 0.0
    yellow_pulp: Score = 0.0
    dark: Score = 0.0
    tropical: Score = 0.0


class BrownFruit(BaseModel):
    dry: Score = 0.0
    brown: Score = 0.0
    overripe: Score = 0.0


class Vegetal(BaseModel):
    grass_herb: Score = 0.0
    earthy: Score = 0.0


class Floral(BaseModel):
    orange_blossom: Score = 0.0
    flowers: Score = 0.0


class Wood(BaseModel):
    light: Score = 0.0
    dark: Score = 0.0
    resin: Score = 0.0


class Spice(BaseModel):
    spices: Score = 0.0
    tobacco: Score = 0.0
    umami: Score = 0.0


class Nut(BaseModel):
    kernel: Score = 0.0
    skin: Score = 0.0


class Defects(BaseModel):
    dirty: Score = 0.0
    animal: Score = 0.0
    rotten: Score = 0.0
    smoke: Score = 0.0
    humid: Score = 0.0
    moldy: Score = 0.0
    overfermented: Score = 0.0
    other: Score = 0.0


class JudgeVerdict(BaseModel):
    result: Verdict = "Approved"
    reasons: List[str] = Field(default_factory=list)
    other_reason: Optional[str] = None


class CocoaSensorySheet(BaseModel):
    cacao: Score = 5.0
    bitterness: Score = 5.0
    astringency: Score = 5.0
    caramel_panela: Score = 5.0
    roast_degree: Score = 0.0

    acidity: Acidity = Field(default_factory=Acidity)
    fresh_fruit: FreshFruit = Field(default_factory=FreshFruit)
    brown_fruit: BrownFruit = Field(default_factory=BrownFruit)
    vegetal: Vegetal = Field(default_factory=Vegetal)
    floral: Floral = Field(default_factory=Floral)
    wood: Wood = Field(default_factory=Wood)
    spice: Spice = Field(default_factory=Spice)
    nut: Nut = Field(default_factory=Nut)
    defects: Defects = Field(default_factory=Defects)

    sweetness: Optional[Score] = None
    texture_notes: str = ""
    flavor_comments: str = ""
    producer_recommendations: str = ""
    additional_positive: str = ""
    verdict: JudgeVerdict = Field(default_factory=JudgeVerdict)


# -----------------------
# Chocolate sheet
# -----------------------
class Appearance(BaseModel):
    color: Score = 0.0
    gloss: Score = 0.0
    surface_homogeneity: Score = 0.0


class AromaNotes(BaseModel):
    floral: Score = 0.0
    fruity: Score = 0.0
    toasted: Score = 0.0
    hazelnut: Score = 0.0
    earthy: Score = 0.0
    spicy: Score = 0.0
    milky: Score = 0.0
    woody: Score = 0.0


class Aroma(BaseModel):
    aroma_intensity: Score = 0.0
    aroma_quality: Score = 0.0
    specific_notes: Optional[AromaNotes] = None


class Texture(BaseModel):
    smoothness: Score = 0.0
    melting: Score = 0.0
    body: Score = 0.0


class FlavorNotes(BaseModel):
    citrus: Score = 0.0
    red_fruits: Score = 0.0
    nuts: Score = 0.0
    caramel: Score = 0.0
    malt: Score = 0.0
    wood: Score = 0.0
    spices: Score = 0.0


class Flavor(BaseModel):
    sweetness: Score = 0.0
    bitterness: Score = 0.0
    acidity: Score = 0.0
    flavor_intensity: Score = 0.0
    flavor_notes: Optional[FlavorNotes] = None


class Aftertaste(BaseModel):
    persistence: Score = 0.0
    aftertaste_quality: Score = 0.0
    final_balance: Score = 0.0


class ChocolateSensorySheet(BaseModel):
    appearance: Appearance = Field(default_factory=Appearance)
    aroma: Aroma = Field(default_factory=Aroma)
    texture: Texture = Field(default_factory=Texture)
    flavor: Flavor = Field(default_factory=Flavor)
    aftertaste: Aftertaste = Field(default_factory=Aftertaste)
    defects: Defects = Field(default_factory=Defects)

    flavor_comments: str = ""
    producer_recommendations: str = ""
    additional_positive: str = ""
    verdict: JudgeVerdict = Field(default_factory=JudgeVerdict)


# -----------------------
# Physical screening
# -----------------------
Percent = Annotated[float, Field(ge=0.0, le=100.0, allow_inf_nan=False)]


class PhysicalEvaluationInput(BaseModel):
    has_undesirable_aromas: bool = False
    undesirable_aromas: List[str] = Field(default_factory=list)
    typical_odors: List[str] = Field(default_factory=list)
    atypical_odors: List[str] = Field(default_factory=list)

    percentage_humidity: Percent = 6.0
    broken_grains: Percent = 0.0
    violated_grains: bool = False
    flat_grains: Percent = 0.0
    affected_grains_insects: int = Field(default=0, ge=0)
    has_affected_grains: bool = False
    well_fermented_beans: Percent = 100.0
    lightly_fermented_beans: Percent = 0.0
    purple_beans: Percent = 0.0
    slaty_beans: Percent = 0.0
    internal_moldy_beans: Percent = 0.0
    over_fermented_beans: Percent = 0.0
    notes: str = ""

    @model_validator(mode="after")
    def _fermentation_within_sample(self) -> "PhysicalEvaluationInput":
        if self.well_fermented_beans + self.lightly_fermented_beans > 100.0:
            raise ValueError("Well-fermented + lightly fermented beans cannot exceed 100%.")
        return self


# -----------------------
# API bodies
# -----------------------
class SampleRegistration(BaseModel):
    participant_name: str = Field(min_length=1)
    category: Literal["cocoa_beans", "cocoa_liquor", "chocolate"]
    product_name: str = ""
    origin: str = ""


RoundName = Literal["sensory", "final"]


class JudgeAssignmentRequest(BaseModel):
    judge_ids: List[int] = Field(min_length=1)
