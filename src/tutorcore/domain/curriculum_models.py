from __future__ import annotations

from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, computed_field


Length = Literal["short", "medium", "long"]
Complexity = Literal["beginner", "intermediate", "advanced"]

UNIT_COUNT_BY_LENGTH: Dict[str, int] = {"short": 3, "medium": 5, "long": 7}
COMPLEXITY_TIERS = ("beginner", "intermediate", "advanced")


class CurriculumUnit(BaseModel):
    unit_id: str
    curriculum_id: str
    title: str
    overview: str
    body: str
    order: int = Field(ge=0)
    complete: bool = False


class Curriculum(BaseModel):
    curriculum_id: str
    user_id: str
    title: str
    description: str
    originating_prompt: str
    length: Length = "medium"
    complexity: Complexity = "intermediate"
    created_at: str
    units: List[CurriculumUnit] = []

    @computed_field  # type: ignore[misc]
    @property
    def progress(self) -> float:
        if not self.units:
            return 0.0
        return sum(1 for u in self.units if u.complete) / len(self.units)

    @computed_field  # type: ignore[misc]
    @property
    def complete(self) -> bool:
        return bool(self.units) and all(u.complete for u in self.units)


class UnitDraft(BaseModel):
    """A unit produced by synthesis, before the store assigns identifiers."""

    title: str
    overview: str
    body: str
    order: int = Field(ge=0)


class CurriculumDraft(BaseModel):
    title: str
    description: str
    originating_prompt: str
    length: Length
    complexity: Complexity
    units: List[UnitDraft]
    fallback: bool = False


class CurriculumCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    topic: str
    length: Optional[str] = None
    complexity: Optional[str] = None


class UnitCompletion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    unit: CurriculumUnit
    curriculum_complete: bool = Field(alias="curriculumComplete")


class LearnerProfile(BaseModel):
    user_id: str
    display_name: str = "Learner"
    background: str = ""


class LearnerProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    background: Optional[str] = None
