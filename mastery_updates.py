"""
Mastery update system for post-evaluation processing.

This module ties answer evaluation and detected learning signals to the
mastery store, then spreads positive changes through the knowledge graph.
The primary write always lands first; propagation is a secondary step whose
failures are logged and never undo it.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import logfire

from mastery_config import MasteryConfig, get_config
from mastery_entities import (
    AnswerEvaluation,
    LearningSignal,
    LearningSignalType,
    MasteryRecord,
    MasteryUpdate,
)
from mastery_errors import MasteryError
from mastery_propagation import PropagationEngine
from mastery_store import MasteryStore, evaluation_step


logger = logging.getLogger(__name__)


# Passive observations in learn mode are weaker than graded answers
LEARN_MODE_SIGNAL_WEIGHTS: Dict[LearningSignalType, float] = {
    LearningSignalType.ASKING_ABOUT: 0.0,
    LearningSignalType.EXPLAINS_CORRECTLY: 0.15,
    LearningSignalType.EXPLAINS_INCORRECTLY: -0.1,
    LearningSignalType.EXPRESSES_CONFUSION: -0.1,
    LearningSignalType.ASKS_FOLLOWUP: 0.05,
    LearningSignalType.ASKS_AGAIN: -0.1,
    LearningSignalType.MAKES_CONNECTION: 0.1,
}

TEST_MODE_SIGNAL_TYPES: Dict[AnswerEvaluation, LearningSignalType] = {
    AnswerEvaluation.CORRECT: LearningSignalType.QUIZ_CORRECT,
    AnswerEvaluation.PARTIAL: LearningSignalType.QUIZ_PARTIAL,
    AnswerEvaluation.INCORRECT: LearningSignalType.QUIZ_INCORRECT,
}

# Signals clear enough to act on at the minimum confidence
CLEAR_SIGNALS = frozenset({
    LearningSignalType.EXPLAINS_CORRECTLY,
    LearningSignalType.EXPLAINS_INCORRECTLY,
    LearningSignalType.EXPRESSES_CONFUSION,
})

MIN_SIGNAL_CONFIDENCE = 0.5
STRONG_SIGNAL_CONFIDENCE = 0.7


def create_test_mode_signal(concept_id: str,
                            concept_label: str,
                            evaluation: AnswerEvaluation,
                            context: Optional[str] = None,
                            settings: Optional[MasteryConfig] = None) -> LearningSignal:
    """Build a full-confidence signal from a graded answer.

    The delta is the configured step for the evaluation, the same one
    ``MasteryStore.record_evaluation`` applies.
    """
    evaluation = AnswerEvaluation(evaluation)
    return LearningSignal(
        type=TEST_MODE_SIGNAL_TYPES[evaluation],
        concept_id=concept_id,
        concept_label=concept_label,
        confidence=1.0,
        mastery_delta=evaluation_step(evaluation, settings),
        context=context,
    )


def create_learn_mode_signal(concept_id: str,
                             concept_label: str,
                             signal_type: LearningSignalType,
                             confidence: float,
                             context: Optional[str] = None) -> LearningSignal:
    """Build a signal from a passive observation; unknown types are neutral."""
    signal_type = LearningSignalType(signal_type)
    return LearningSignal(
        type=signal_type,
        concept_id=concept_id,
        concept_label=concept_label,
        confidence=confidence,
        mastery_delta=LEARN_MODE_SIGNAL_WEIGHTS.get(signal_type, 0.0),
        context=context,
    )


def should_update_in_learn_mode(signal_type: LearningSignalType,
                                confidence: float,
                                min_confidence: float = MIN_SIGNAL_CONFIDENCE) -> bool:
    """Whether a learn-mode observation is trustworthy enough to apply."""
    if confidence < min_confidence:
        return False
    return LearningSignalType(signal_type) in CLEAR_SIGNALS or confidence >= STRONG_SIGNAL_CONFIDENCE


def aggregate_signals(signals: Iterable[LearningSignal]) -> List[LearningSignal]:
    """Keep one signal per concept, the one with the largest absolute delta.

    Concepts keep the order in which they were first seen.
    """
    strongest: Dict[str, LearningSignal] = {}
    for signal in signals:
        current = strongest.get(signal.concept_id)
        if current is None or abs(signal.mastery_delta) > abs(current.mastery_delta):
            strongest[signal.concept_id] = signal
    return list(strongest.values())


@dataclass
class SignalBatchResult:
    """Outcome of processing a batch of learning signals."""
    updates: List[MasteryUpdate] = field(default_factory=list)
    skipped: List[LearningSignal] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total_propagated(self) -> int:
        return sum(u.propagation.total_affected for u in self.updates if u.propagation)


class MasteryUpdateService:
    """Service for updating mastery after answers and observed signals."""

    def __init__(self,
                 store: MasteryStore,
                 engine: PropagationEngine,
                 settings: Optional[MasteryConfig] = None):
        """Initialize mastery update service.

        Args:
            store: Mastery store receiving the primary writes
            engine: Propagation engine for neighbor credit
            settings: Mastery settings, defaults to the global configuration
        """
        self.store = store
        self.engine = engine
        self.settings = settings or get_config().mastery

    async def _propagate(self, user_id: str, update: MasteryUpdate) -> MasteryUpdate:
        """Attach propagation results to an update without failing it."""
        if update.mastery_change <= 0:
            return update
        try:
            update.propagation = await self.engine.propagate(
                user_id, update.concept_id, update.mastery_change
            )
        except Exception as e:
            logger.error(f"Propagation from {update.concept_id} failed for {user_id}: {e}")
        return update

    async def record_answer(self,
                            user_id: str,
                            concept_id: str,
                            is_correct: bool,
                            concept_label: Optional[str] = None) -> MasteryRecord:
        """Record a correct or incorrect answer and propagate any gain.

        Returns:
            The updated mastery record of the answered concept
        """
        evaluation = AnswerEvaluation.CORRECT if is_correct else AnswerEvaluation.INCORRECT
        await self.record_evaluation(user_id, concept_id, evaluation, concept_label)
        record = await self.store.get(user_id, concept_id)
        if record is None:
            raise MasteryError(f"Mastery record {user_id}/{concept_id} vanished after write")
        return record

    async def record_evaluation(self,
                                user_id: str,
                                concept_id: str,
                                evaluation: AnswerEvaluation,
                                concept_label: Optional[str] = None) -> MasteryUpdate:
        """Record a graded answer and propagate any gain.

        Args:
            user_id: Learner who answered
            concept_id: Concept the question tested
            evaluation: Correct, partial or incorrect
            concept_label: Label used if the record has to be created

        Returns:
            ``MasteryUpdate`` with propagation results attached
        """
        evaluation = AnswerEvaluation(evaluation)
        with logfire.span("mastery_updates.record_evaluation") as span:
            span.set_attribute("user_id", user_id)
            span.set_attribute("concept_id", concept_id)
            span.set_attribute("evaluation", evaluation.value)

            update = await self.store.record_evaluation(user_id, concept_id, evaluation, concept_label)
            update.signal_type = TEST_MODE_SIGNAL_TYPES[evaluation]
            update = await self._propagate(user_id, update)

            span.set_attribute("mastery_change", update.mastery_change)
            if evaluation == AnswerEvaluation.INCORRECT:
                logfire.warning(
                    "Answer evaluated as incorrect",
                    user_id=user_id,
                    concept_id=concept_id,
                    new_mastery=update.new_mastery,
                )
            else:
                logfire.info(
                    "Answer evaluated",
                    user_id=user_id,
                    concept_id=concept_id,
                    evaluation=evaluation.value,
                    new_mastery=update.new_mastery,
                )
            return update

    async def process_signals(self,
                              user_id: str,
                              signals: Iterable[LearningSignal],
                              min_confidence: float = MIN_SIGNAL_CONFIDENCE) -> SignalBatchResult:
        """Apply a batch of learning signals.

        Signals below ``min_confidence`` are skipped. The rest are reduced to
        one signal per concept, applied, and their positive changes
        propagated. A failing concept is logged and the batch continues.
        """
        result = SignalBatchResult()
        accepted = []
        for signal in signals:
            if signal.confidence < min_confidence:
                result.skipped.append(signal)
            else:
                accepted.append(signal)

        with logfire.span("mastery_updates.process_signals") as span:
            span.set_attribute("user_id", user_id)
            span.set_attribute("signals", len(accepted))

            for signal in aggregate_signals(accepted):
                try:
                    update = await self.store.apply_signal(user_id, signal)
                except MasteryError as e:
                    logger.error(f"Failed to apply {signal.type.value} for {user_id}/{signal.concept_id}: {e}")
                    result.failed[signal.concept_id] = str(e)
                    continue
                result.updates.append(await self._propagate(user_id, update))

            span.set_attribute("updates", len(result.updates))
            span.set_attribute("failed", len(result.failed))
            logger.info(
                f"Processed {len(result.updates)} signals for {user_id}, "
                f"skipped {len(result.skipped)}, failed {len(result.failed)}"
            )
        return result
