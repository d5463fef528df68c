"""
Per-learner mastery records.

The mastery store is the only component that writes mastery values. Reads
compose the decay model into an ``EffectiveMastery`` view; answer writes
compose the SM-2 scheduler. Records are keyed ``user:{user}:mastery:{concept}``
in the underlying record store, and every write is last-writer-wins on a
single record.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

from pydantic import ValidationError

from mastery_config import MasteryConfig, get_config
from mastery_decay import effective_mastery
from mastery_entities import (
    SUMMARY_FIELDS,
    AnswerEvaluation,
    EffectiveMastery,
    LearningSignal,
    LearningSignalType,
    MasteryLevel,
    MasteryRecord,
    MasterySummary,
    MasteryUpdate,
    utcnow,
)
from mastery_errors import RecordStoreError
from mastery_scheduler import clamp_ease, next_review
from record_store import RecordStore


logger = logging.getLogger(__name__)


def mastery_key(user_id: str, concept_id: str) -> str:
    """Record key for one user's mastery of one concept."""
    return f"user:{user_id}:mastery:{concept_id}"


def mastery_prefix(user_id: str) -> str:
    return f"user:{user_id}:mastery:"


def evaluation_step(evaluation: AnswerEvaluation, settings: Optional[MasteryConfig] = None) -> float:
    """Configured mastery step for a graded answer."""
    settings = settings or get_config().mastery
    return {
        AnswerEvaluation.CORRECT: settings.correct_step,
        AnswerEvaluation.PARTIAL: settings.partial_step,
        AnswerEvaluation.INCORRECT: settings.incorrect_step,
    }[AnswerEvaluation(evaluation)]


class MasteryChange(NamedTuple):
    """A written delta together with the score it replaced."""
    previous_mastery: float
    record: MasteryRecord


class MasteryStore:
    """CRUD over mastery records with decay-aware reads."""

    def __init__(self,
                 records: RecordStore,
                 settings: Optional[MasteryConfig] = None,
                 clock: Callable[[], datetime] = utcnow):
        """Initialize the mastery store.

        Args:
            records: Backing key-value store
            settings: Mastery settings, defaults to the global configuration
            clock: Source of the current time
        """
        self.records = records
        self.settings = settings or get_config().mastery
        self.clock = clock

    # Reads

    async def get(self, user_id: str, concept_id: str) -> Optional[MasteryRecord]:
        """Get the stored record, or ``None`` if the user never interacted."""
        try:
            data = await self.records.get(mastery_key(user_id, concept_id))
        except RecordStoreError as e:
            logger.error(f"Failed to get mastery for {user_id}/{concept_id}: {e}")
            raise

        if data is None:
            return None
        try:
            return MasteryRecord.model_validate(data)
        except ValidationError as e:
            raise RecordStoreError(f"Malformed mastery record {user_id}/{concept_id}", e) from e

    def to_effective(self, record: MasteryRecord, now: Optional[datetime] = None) -> EffectiveMastery:
        """Apply decay and due-date checks to a stored record."""
        now = now or self.clock()
        decayed = effective_mastery(
            record.mastery_score,
            record.last_interaction,
            now,
            decay_rate=self.settings.decay_rate,
        )
        return EffectiveMastery(
            **record.model_dump(),
            effective_mastery=decayed.value,
            days_since_interaction=decayed.days_since_interaction,
            is_due_for_review=record.next_review_date <= now,
        )

    async def get_effective(self,
                            user_id: str,
                            concept_id: str,
                            now: Optional[datetime] = None) -> Optional[EffectiveMastery]:
        """Get mastery with decay applied, or ``None`` if absent."""
        record = await self.get(user_id, concept_id)
        if record is None:
            return None
        return self.to_effective(record, now)

    # Writes

    def new_record(self, user_id: str, concept_id: str, concept_label: str,
                   initial_mastery: Optional[float] = None) -> MasteryRecord:
        """Build, without saving, a record with default values."""
        now = self.clock()
        return MasteryRecord(
            user_id=user_id,
            concept_id=concept_id,
            concept_label=concept_label or concept_id,
            mastery_score=self.settings.default_mastery if initial_mastery is None else initial_mastery,
            confidence=self.settings.default_confidence,
            ease_factor=self.settings.default_ease_factor,
            current_interval=0,
            next_review_date=now + timedelta(days=1),
            last_interaction=now,
            created_at=now,
        )

    async def save(self, record: MasteryRecord) -> None:
        """Persist a record, clamping the ease factor into bounds."""
        record.ease_factor = clamp_ease(record.ease_factor, self.settings)
        try:
            await self.records.set(
                mastery_key(record.user_id, record.concept_id),
                record.model_dump(mode="json"),
            )
        except RecordStoreError as e:
            logger.error(f"Failed to save mastery for {record.user_id}/{record.concept_id}: {e}")
            raise
        logger.debug(
            f"Mastery saved for {record.user_id}/{record.concept_id}: "
            f"score={record.mastery_score} interval={record.current_interval}"
        )

    async def create(self,
                     user_id: str,
                     concept_id: str,
                     concept_label: str,
                     initial_mastery: Optional[float] = None) -> MasteryRecord:
        """Create and persist a record with default values."""
        record = self.new_record(user_id, concept_id, concept_label, initial_mastery)
        await self.save(record)
        logger.info(f"Created mastery record for {user_id}/{concept_id}")
        return record

    async def delete(self, user_id: str, concept_id: str) -> bool:
        """Delete a record. Returns True if one existed."""
        removed = await self.records.delete(mastery_key(user_id, concept_id))
        if removed:
            logger.info(f"Mastery deleted for {user_id}/{concept_id}")
        return removed

    async def _interact(self,
                        user_id: str,
                        concept_id: str,
                        delta: float,
                        outcome: Optional[bool],
                        concept_label: Optional[str] = None) -> Tuple[Optional[MasteryRecord], MasteryRecord]:
        """Apply one interaction to a record, creating it if needed.

        ``outcome`` drives SM-2 scheduling and streaks: True for a success,
        False for a failure, None for a neutral interaction that leaves the
        schedule untouched.
        """
        existing = await self.get(user_id, concept_id)
        if existing is None:
            previous = None
            record = self.new_record(user_id, concept_id, concept_label or concept_id)
        else:
            previous = existing.model_copy()
            record = existing
            if concept_label:
                record.concept_label = concept_label

        now = self.clock()
        record.mastery_score = round(max(0.0, min(1.0, record.mastery_score + delta)), 3)
        record.confidence = round(min(1.0, record.confidence + self.settings.confidence_gain), 3)
        record.total_attempts += 1

        if outcome is True:
            record.streak_correct += 1
            record.streak_wrong = 0
            record.correct_attempts += 1
            record.last_correct_answer = now
        elif outcome is False:
            record.streak_wrong += 1
            record.streak_correct = 0

        if outcome is not None:
            schedule = next_review(outcome, record.current_interval, record.ease_factor, now, self.settings)
            record.current_interval = schedule.next_interval
            record.ease_factor = schedule.new_ease_factor
            record.next_review_date = schedule.next_review_date

        record.last_interaction = now
        await self.save(record)
        return previous, record

    def _build_update(self,
                      previous: Optional[MasteryRecord],
                      record: MasteryRecord,
                      signal_type: Optional[LearningSignalType] = None) -> MasteryUpdate:
        baseline = previous.mastery_score if previous else self.settings.default_mastery
        return MasteryUpdate(
            concept_id=record.concept_id,
            signal_type=signal_type,
            previous_mastery=previous.mastery_score if previous else None,
            new_mastery=record.mastery_score,
            previous_confidence=previous.confidence if previous else None,
            new_confidence=record.confidence,
            mastery_change=round(record.mastery_score - baseline, 3),
        )

    def evaluation_delta(self, evaluation: AnswerEvaluation) -> float:
        """Mastery step applied for an answer evaluation."""
        return evaluation_step(evaluation, self.settings)

    async def record_evaluation(self,
                                user_id: str,
                                concept_id: str,
                                evaluation: AnswerEvaluation,
                                concept_label: Optional[str] = None) -> MasteryUpdate:
        """Record a graded answer and reschedule the concept.

        Partial answers raise mastery by a smaller step and count as a
        success for scheduling.
        """
        delta = self.evaluation_delta(evaluation)
        previous, record = await self._interact(
            user_id, concept_id, delta, outcome=delta > 0, concept_label=concept_label
        )
        logger.info(
            f"Answer recorded for {user_id}/{concept_id}: {AnswerEvaluation(evaluation).value}, "
            f"mastery {previous.mastery_score if previous else None} -> {record.mastery_score}"
        )
        return self._build_update(previous, record)

    async def record_answer(self,
                            user_id: str,
                            concept_id: str,
                            is_correct: bool,
                            concept_label: Optional[str] = None) -> MasteryRecord:
        """Record a correct or incorrect answer and return the updated record."""
        evaluation = AnswerEvaluation.CORRECT if is_correct else AnswerEvaluation.INCORRECT
        delta = self.evaluation_delta(evaluation)
        _, record = await self._interact(
            user_id, concept_id, delta, outcome=is_correct, concept_label=concept_label
        )
        return record

    async def apply_signal(self, user_id: str, signal: LearningSignal) -> MasteryUpdate:
        """Apply a detected learning signal to the concept it names."""
        if signal.mastery_delta > 0:
            outcome = True
        elif signal.mastery_delta < 0:
            outcome = False
        else:
            outcome = None

        previous, record = await self._interact(
            user_id,
            signal.concept_id,
            signal.mastery_delta,
            outcome=outcome,
            concept_label=signal.concept_label or None,
        )
        logger.info(
            f"Mastery updated from signal {signal.type.value} for {user_id}/{signal.concept_id}: "
            f"{record.mastery_score}"
        )
        return self._build_update(previous, record, signal.type)

    async def apply_delta_change(self,
                                 user_id: str,
                                 concept_id: str,
                                 delta: float,
                                 concept_label: Optional[str] = None) -> Optional[MasteryChange]:
        """Add ``delta`` to stored mastery and report the replaced score.

        A missing record is created only when ``concept_label`` is given.
        Nothing is written when the clamped change is below
        ``min_propagation_change``.
        """
        record = await self.get(user_id, concept_id)
        if record is None:
            if concept_label is None:
                return None
            record = self.new_record(user_id, concept_id, concept_label)

        previous = record.mastery_score
        new_value = max(0.0, min(1.0, previous + delta))
        if abs(new_value - previous) < self.settings.min_propagation_change:
            return None

        record.mastery_score = round(new_value, 3)
        await self.save(record)
        return MasteryChange(previous, record)

    async def apply_delta(self,
                          user_id: str,
                          concept_id: str,
                          delta: float,
                          concept_label: Optional[str] = None) -> Optional[MasteryRecord]:
        """Add ``delta`` to stored mastery; ``None`` when nothing was written."""
        change = await self.apply_delta_change(user_id, concept_id, delta, concept_label)
        return change.record if change else None

    # Queries

    async def concept_ids(self, user_id: str) -> List[str]:
        """Ids of every concept the user has a record for."""
        prefix = mastery_prefix(user_id)
        keys = await self.records.keys(f"{prefix}*")
        return [key[len(prefix):] for key in keys]

    async def has_mastery_data(self, user_id: str) -> bool:
        return bool(await self.concept_ids(user_id))

    async def get_batch(self,
                        user_id: str,
                        concept_ids: Iterable[str],
                        now: Optional[datetime] = None) -> Dict[str, EffectiveMastery]:
        """Effective mastery for several concepts; absent ones are omitted."""
        now = now or self.clock()
        ids = list(dict.fromkeys(concept_ids))
        records = await asyncio.gather(*(self.get(user_id, cid) for cid in ids))
        return {
            cid: self.to_effective(record, now)
            for cid, record in zip(ids, records)
            if record is not None
        }

    async def get_all_effective(self,
                                user_id: str,
                                now: Optional[datetime] = None) -> List[EffectiveMastery]:
        """Every record of the user with decay applied."""
        batch = await self.get_batch(user_id, await self.concept_ids(user_id), now)
        return list(batch.values())

    async def get_weakest(self, user_id: str, limit: int = 10) -> List[EffectiveMastery]:
        """Concepts with the lowest effective mastery."""
        all_mastery = await self.get_all_effective(user_id)
        all_mastery.sort(key=lambda m: m.effective_mastery)
        return all_mastery[:limit]

    async def get_strongest(self, user_id: str, limit: int = 10) -> List[EffectiveMastery]:
        """Concepts with the highest effective mastery."""
        all_mastery = await self.get_all_effective(user_id)
        all_mastery.sort(key=lambda m: m.effective_mastery, reverse=True)
        return all_mastery[:limit]

    async def get_due_for_review(self, user_id: str, limit: int = 10) -> List[EffectiveMastery]:
        """Concepts whose review date has passed, most overdue first."""
        due = [m for m in await self.get_all_effective(user_id) if m.is_due_for_review]
        due.sort(key=lambda m: m.next_review_date)
        return due[:limit]

    async def get_by_mastery_range(self,
                                   user_id: str,
                                   min_mastery: float,
                                   max_mastery: float,
                                   limit: int = 50) -> List[EffectiveMastery]:
        """Concepts whose stored score lies in ``[min_mastery, max_mastery]``."""
        in_range = [
            m for m in await self.get_all_effective(user_id)
            if min_mastery <= m.mastery_score <= max_mastery
        ]
        in_range.sort(key=lambda m: m.mastery_score)
        return in_range[:limit]

    async def get_summary(self, user_id: str) -> MasterySummary:
        """Aggregate statistics over the user's effective mastery."""
        all_mastery = await self.get_all_effective(user_id)
        summary = MasterySummary(user_id=user_id, last_updated=self.clock())
        if not all_mastery:
            return summary

        for m in all_mastery:
            field_name = SUMMARY_FIELDS[MasteryLevel.from_score(m.effective_mastery)]
            setattr(summary, field_name, getattr(summary, field_name) + 1)

        summary.total_concepts = len(all_mastery)
        summary.concepts_due_for_review = sum(1 for m in all_mastery if m.is_due_for_review)
        summary.average_mastery = round(
            sum(m.effective_mastery for m in all_mastery) / len(all_mastery), 3
        )
        return summary
