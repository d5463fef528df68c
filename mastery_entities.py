"""
Pydantic models for the mastery tracking engine.

These models describe per-learner mastery records, the read-only knowledge
graph the engine walks, and the transient results produced by propagation,
prerequisite checks and learning path planning.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from mastery_errors import PropagationFailure


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _clamp_unit(v: float) -> float:
    return max(0.0, min(1.0, float(v)))


class MasteryLevel(str, Enum):
    """Coarse mastery bands used for summaries."""
    WEAK = "weak"
    LEARNING = "learning"
    MASTERED = "mastered"

    @classmethod
    def from_score(cls, score: float) -> MasteryLevel:
        """Convert an effective mastery score (0-1) to a band."""
        if score > 0.8:
            return cls.MASTERED
        elif score > 0.3:
            return cls.LEARNING
        else:
            return cls.WEAK


class MasteryRecord(BaseModel):
    """Stored, non-decaying mastery estimate for one user and concept."""

    model_config = ConfigDict(validate_assignment=True)

    user_id: str = Field(..., min_length=1, description="Owner of the record")
    concept_id: str = Field(..., min_length=1, description="Links to GraphNode.id")
    concept_label: str = Field(default="", description="Human-readable label")

    mastery_score: float = Field(default=0.0, description="Stored mastery (0-1)")
    confidence: float = Field(default=0.3, description="How sure we are about the score (0-1)")

    ease_factor: float = Field(default=2.5, gt=0, description="SM-2 ease factor")
    current_interval: int = Field(default=0, ge=0, description="Current review interval in days")
    next_review_date: datetime = Field(default_factory=utcnow)

    last_interaction: datetime = Field(default_factory=utcnow)
    last_correct_answer: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    total_attempts: int = Field(default=0, ge=0)
    correct_attempts: int = Field(default=0, ge=0)
    streak_correct: int = Field(default=0, ge=0)
    streak_wrong: int = Field(default=0, ge=0)

    @field_validator("mastery_score", "confidence", mode="before")
    @classmethod
    def clamp_unit_interval(cls, v: float) -> float:
        """Clamp scores into [0, 1] instead of rejecting them."""
        return _clamp_unit(v)

    @field_validator("next_review_date", "last_interaction", "created_at", "last_correct_answer")
    @classmethod
    def ensure_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Treat naive timestamps as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class EffectiveMastery(MasteryRecord):
    """A mastery record with decay applied. Computed on read, never stored."""

    effective_mastery: float = Field(..., ge=0.0, le=1.0)
    days_since_interaction: float = Field(..., ge=0.0)
    is_due_for_review: bool = False


class LearningRelationType(str, Enum):
    """Learning relationship types carried by graph edges."""
    PREREQUISITE = "prerequisite"  # Must know source before target
    COREQUISITE = "corequisite"  # Often learned together
    APPLICATION = "application"  # Target applies source concept
    EXAMPLE = "example"  # Target is example of source
    OPPOSITE = "opposite"  # Contrasting concepts
    RELATED = "related"  # General relation


class GraphNode(BaseModel):
    """A concept in a learner's knowledge graph."""

    id: str = Field(..., min_length=1)
    label: str = ""
    type: str = "concept"
    description: Optional[str] = None
    importance: Optional[float] = None


class KnowledgeGraphEdge(BaseModel):
    """Directed edge source -> target. Read-only to the engine."""

    model_config = ConfigDict(populate_by_name=True)

    source: str
    target: str
    relation: str = ""
    learning_relation: Optional[LearningRelationType] = Field(
        default=None,
        validation_alias=AliasChoices("learning_relation", "learningRelation"),
    )
    propagation_weight: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("propagation_weight", "propagationWeight"),
    )

    @field_validator("learning_relation", mode="before")
    @classmethod
    def drop_unknown_relation(cls, v):
        """Unknown typed relations fall back to label classification."""
        if v is None or isinstance(v, LearningRelationType):
            return v
        try:
            return LearningRelationType(str(v).lower())
        except ValueError:
            return None


class KnowledgeGraph(BaseModel):
    """A learner's knowledge graph as returned by a graph store."""

    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[KnowledgeGraphEdge] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.nodes

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        """Find a node by id."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, concept_id: str) -> List[KnowledgeGraphEdge]:
        """Edges where the concept is the target (its prerequisites)."""
        return [e for e in self.edges if e.target == concept_id]

    def outgoing(self, concept_id: str) -> List[KnowledgeGraphEdge]:
        """Edges where the concept is the source (its dependents)."""
        return [e for e in self.edges if e.source == concept_id]


class PropagationResult(BaseModel):
    """Credit applied to one neighboring concept."""

    concept_id: str
    concept_label: str
    previous_mastery: float
    new_mastery: float
    propagation_source: str
    propagation_type: LearningRelationType
    depth: int = 1


class MasteryPropagationResult(BaseModel):
    """Outcome of a single propagation call."""

    source_concept_id: str
    source_mastery_change: float
    propagated_to: List[PropagationResult] = Field(default_factory=list)
    total_affected: int = 0
    processing_time_ms: float = 0.0
    failures: List[PropagationFailure] = Field(default_factory=list)


class PrerequisiteInfo(BaseModel):
    """Mastery state of one prerequisite of a concept."""

    concept_id: str
    concept_label: str
    mastery: float
    effective_mastery: float
    is_weak: bool
    recommendation: Optional[str] = None


class PrerequisiteCheckResult(BaseModel):
    """Result of checking the prerequisites of a concept."""

    concept_id: str
    concept_label: str
    prerequisites: List[PrerequisiteInfo] = Field(default_factory=list)
    all_prerequisites_met: bool = True
    weak_prerequisites: List[str] = Field(default_factory=list)


class LearningPathSuggestion(BaseModel):
    """A concept suggested for study, with a priority in [0, 1]."""

    concept_id: str
    concept_label: str
    current_mastery: float
    reason: str
    priority: float


class RelatedConcept(BaseModel):
    """A concept reachable from another within a number of hops."""

    concept_id: str
    concept_label: str
    relation: LearningRelationType
    mastery: Optional[float] = None
    depth: int


class MasterySummary(BaseModel):
    """Aggregate mastery statistics for a user."""

    user_id: str
    total_concepts: int = 0
    mastered_concepts: int = 0
    learning_concepts: int = 0
    weak_concepts: int = 0
    average_mastery: float = 0.0
    concepts_due_for_review: int = 0
    last_updated: datetime = Field(default_factory=utcnow)


class AnswerEvaluation(str, Enum):
    """Outcome of evaluating a learner's answer."""
    CORRECT = "correct"
    PARTIAL = "partial"
    INCORRECT = "incorrect"


class LearningSignalType(str, Enum):
    """Learning signals detected from interactions."""
    ASKING_ABOUT = "asking_about"
    EXPLAINS_CORRECTLY = "explains_correctly"
    EXPLAINS_INCORRECTLY = "explains_incorrectly"
    EXPRESSES_CONFUSION = "expresses_confusion"
    ASKS_FOLLOWUP = "asks_followup"
    ASKS_AGAIN = "asks_again"
    QUIZ_CORRECT = "quiz_correct"
    QUIZ_INCORRECT = "quiz_incorrect"
    QUIZ_PARTIAL = "quiz_partial"
    MAKES_CONNECTION = "makes_connection"


class LearningSignal(BaseModel):
    """A signal that should nudge mastery of one concept."""

    type: LearningSignalType
    concept_id: str = Field(..., min_length=1)
    concept_label: str = ""
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    mastery_delta: float = Field(..., ge=-1.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)
    context: Optional[str] = None


class MasteryUpdate(BaseModel):
    """What changed for a concept after a signal or answer."""

    concept_id: str
    signal_type: Optional[LearningSignalType] = None
    previous_mastery: Optional[float] = None
    new_mastery: float
    previous_confidence: Optional[float] = None
    new_confidence: float
    mastery_change: float = 0.0
    propagation: Optional[MasteryPropagationResult] = None


# Bands reported by MasterySummary, keyed by MasteryLevel.
SUMMARY_FIELDS: Dict[MasteryLevel, str] = {
    MasteryLevel.MASTERED: "mastered_concepts",
    MasteryLevel.LEARNING: "learning_concepts",
    MasteryLevel.WEAK: "weak_concepts",
}
