from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, List


class ParsedAction(BaseModel):
    """
    Canonical record for one candidate action proposed by the Director.

    Every field has a concrete default so callers only ever test for
    emptiness. `success_sublocation_change` is the one optional field: it is
    None when the Director gave no change or the "none" sentinel.
    """

    model_config = ConfigDict(validate_assignment=True)

    # Position in the Director's "actions" array, kept even when siblings are dropped
    original_index: int = Field(frozen=True)

    action_text: str = ""
    skill: str = ""
    difficulty: str = ""
    risk: str = ""

    # Success consequences
    success_consequence: str = ""
    success_state_changes: Dict[str, str] = Field(default_factory=dict)
    success_sublocation_change: Optional[str] = None
    success_items_gained: List[str] = Field(default_factory=list)
    success_companions_gained: List[str] = Field(default_factory=list)

    # Failure consequences
    failure_consequence: str = ""
    failure_type: str = ""


class ScoredAction(BaseModel):
    """
    A decoded action plus the Critic's sub-scores.

    Sub-scores start as None (not yet evaluated) and are filled in one at a
    time by whoever drives the Critic. `total_score` belongs to the caller's
    ranking policy and is never computed here.
    """

    model_config = ConfigDict(validate_assignment=True)

    action: ParsedAction

    skill_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    consequence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    context_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    location_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    specificity_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    total_score: Optional[float] = None
    evaluation_duration_ms: float = Field(default=0.0, ge=0.0)

    @property
    def sub_scores(self) -> Dict[str, Optional[float]]:
        """The five Critic sub-scores keyed by field name."""
        return {
            "skill_score": self.skill_score,
            "consequence_score": self.consequence_score,
            "context_score": self.context_score,
            "location_score": self.location_score,
            "specificity_score": self.specificity_score,
        }

    @property
    def is_fully_scored(self) -> bool:
        return all(score is not None for score in self.sub_scores.values())
