"""
Test suite for the mastery store.

Tests cover record creation, answer blending and scheduling, signal and delta
application, decay-aware reads and the aggregate queries.
"""

from datetime import timedelta

import pytest

from mastery_entities import (
    AnswerEvaluation,
    LearningSignal,
    LearningSignalType,
    MasteryRecord,
)
from mastery_errors import RecordStoreError
from mastery_store import MasteryChange, mastery_key
from record_store import InMemoryRecordStore
from test_utils.mastery_helpers import EPOCH, FailingRecordStore, FixedClock, make_store


USER = "user_1"


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def records():
    return InMemoryRecordStore()


@pytest.fixture
def store(records, clock):
    return make_store(records, clock)


class TestCreateAndGet:
    """Test record lifecycle."""

    @pytest.mark.asyncio
    async def test_get_absent(self, store):
        """Test that a never-touched concept has no record."""
        assert await store.get(USER, "algebra") is None
        assert await store.get_effective(USER, "algebra") is None

    @pytest.mark.asyncio
    async def test_create_defaults(self, store, records):
        """Test documented defaults for new records."""
        record = await store.create(USER, "algebra", "Algebra")

        assert record.mastery_score == 0.0
        assert record.ease_factor == 2.5
        assert record.current_interval == 0
        assert record.confidence == 0.3
        assert record.total_attempts == 0
        assert record.streak_correct == 0
        assert record.last_interaction == EPOCH
        assert record.next_review_date == EPOCH + timedelta(days=1)
        assert await records.get(mastery_key(USER, "algebra")) is not None

    @pytest.mark.asyncio
    async def test_create_with_initial_mastery(self, store):
        record = await store.create(USER, "algebra", "Algebra", initial_mastery=0.6)
        assert (await store.get(USER, "algebra")).mastery_score == 0.6
        assert record.concept_label == "Algebra"

    @pytest.mark.asyncio
    async def test_save_clamps_ease(self, store):
        """Test that an out-of-range ease factor is clamped on write."""
        record = await store.create(USER, "algebra", "Algebra")
        record.ease_factor = 7.5
        await store.save(record)
        assert (await store.get(USER, "algebra")).ease_factor == 3.0

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.create(USER, "algebra", "Algebra")
        assert await store.delete(USER, "algebra") is True
        assert await store.delete(USER, "algebra") is False
        assert await store.get(USER, "algebra") is None

    @pytest.mark.asyncio
    async def test_malformed_record(self, store, records):
        await records.set(mastery_key(USER, "algebra"), {"user_id": USER})
        with pytest.raises(RecordStoreError):
            await store.get(USER, "algebra")

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, store):
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.9)
        assert await store.get("user_2", "algebra") is None
        assert await store.concept_ids("user_2") == []


class TestEffectiveMastery:
    """Test decay-aware reads."""

    @pytest.mark.asyncio
    async def test_no_decay_immediately(self, store):
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.9)
        effective = await store.get_effective(USER, "algebra")
        assert effective.effective_mastery == 0.9
        assert effective.days_since_interaction == 0.0
        assert effective.is_due_for_review is False

    @pytest.mark.asyncio
    async def test_decay_after_a_week(self, store, clock):
        """Test reading a week after the last interaction."""
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.9)
        clock.advance(days=7)
        effective = await store.get_effective(USER, "algebra")

        assert effective.effective_mastery == pytest.approx(0.447, abs=0.01)
        assert effective.mastery_score == 0.9
        assert effective.days_since_interaction == pytest.approx(7.0)
        assert effective.is_due_for_review is True

    @pytest.mark.asyncio
    async def test_explicit_now(self, store):
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.9)
        effective = await store.get_effective(USER, "algebra", now=EPOCH + timedelta(days=30))
        assert effective.effective_mastery == pytest.approx(0.045, abs=0.01)


class TestRecordAnswer:
    """Test answer recording."""

    @pytest.mark.asyncio
    async def test_first_correct_answer_creates_record(self, store):
        """Test that answering an unknown concept creates it."""
        record = await store.record_answer(USER, "algebra", True, "Algebra")

        assert record.concept_label == "Algebra"
        assert record.mastery_score == pytest.approx(0.3)
        assert record.confidence == pytest.approx(0.4)
        assert record.total_attempts == 1
        assert record.correct_attempts == 1
        assert record.streak_correct == 1
        assert record.current_interval == 1
        assert record.ease_factor == pytest.approx(2.6)
        assert record.last_correct_answer == EPOCH
        assert record.next_review_date == EPOCH + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_label_defaults_to_id(self, store):
        record = await store.record_answer(USER, "algebra", True)
        assert record.concept_label == "algebra"

    @pytest.mark.asyncio
    async def test_interval_progression(self, store, clock):
        """Test SM-2 intervals across consecutive correct answers."""
        intervals = []
        for _ in range(3):
            record = await store.record_answer(USER, "algebra", True)
            intervals.append(record.current_interval)
            clock.advance(days=record.current_interval)
        assert intervals == [1, 6, 16]

    @pytest.mark.asyncio
    async def test_incorrect_answer(self, store, clock):
        """Test that a wrong answer lowers mastery and resets the schedule."""
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.5)
        clock.advance(days=2)
        record = await store.record_answer(USER, "algebra", False)

        assert record.mastery_score == pytest.approx(0.3)
        assert record.streak_correct == 0
        assert record.streak_wrong == 1
        assert record.correct_attempts == 0
        assert record.current_interval == 1
        assert record.ease_factor == pytest.approx(2.3)
        assert record.last_interaction == clock.now

    @pytest.mark.asyncio
    async def test_mastery_clamped(self, store):
        """Test that repeated answers stay within [0, 1]."""
        for _ in range(5):
            record = await store.record_answer(USER, "algebra", True)
        assert record.mastery_score == 1.0
        assert record.confidence <= 1.0

        for _ in range(10):
            record = await store.record_answer(USER, "algebra", False)
        assert record.mastery_score == 0.0
        assert record.ease_factor == pytest.approx(1.3)

    @pytest.mark.asyncio
    async def test_streak_resets_on_correct(self, store):
        await store.record_answer(USER, "algebra", False)
        await store.record_answer(USER, "algebra", False)
        record = await store.record_answer(USER, "algebra", True)
        assert record.streak_wrong == 0
        assert record.streak_correct == 1
        assert record.total_attempts == 3

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, clock):
        store = make_store(FailingRecordStore(fail_on=["algebra"]), clock)
        with pytest.raises(RecordStoreError):
            await store.record_answer(USER, "algebra", True)


class TestRecordEvaluation:
    """Test graded evaluations."""

    @pytest.mark.asyncio
    async def test_partial_answer(self, store):
        """Test that partial answers add a small step and count as success."""
        update = await store.record_evaluation(USER, "algebra", AnswerEvaluation.PARTIAL, "Algebra")

        assert update.previous_mastery is None
        assert update.new_mastery == pytest.approx(0.1)
        assert update.mastery_change == pytest.approx(0.1)
        record = await store.get(USER, "algebra")
        assert record.streak_correct == 1
        assert record.current_interval == 1

    @pytest.mark.asyncio
    async def test_change_reports_clamping(self, store):
        """Test that the reported change is the applied change."""
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.9)
        update = await store.record_evaluation(USER, "algebra", AnswerEvaluation.CORRECT)
        assert update.previous_mastery == 0.9
        assert update.new_mastery == 1.0
        assert update.mastery_change == pytest.approx(0.1)
        assert update.previous_confidence == pytest.approx(0.3)
        assert update.new_confidence == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_accepts_string_evaluation(self, store):
        update = await store.record_evaluation(USER, "algebra", "incorrect")
        assert update.new_mastery == 0.0
        assert update.mastery_change == 0.0


class TestApplySignal:
    """Test generic learning signals."""

    @pytest.mark.asyncio
    async def test_positive_signal(self, store):
        signal = LearningSignal(
            type=LearningSignalType.EXPLAINS_CORRECTLY,
            concept_id="algebra",
            concept_label="Algebra",
            mastery_delta=0.15,
        )
        update = await store.apply_signal(USER, signal)

        assert update.signal_type == LearningSignalType.EXPLAINS_CORRECTLY
        assert update.new_mastery == pytest.approx(0.15)
        record = await store.get(USER, "algebra")
        assert record.concept_label == "Algebra"
        assert record.current_interval == 1

    @pytest.mark.asyncio
    async def test_neutral_signal_keeps_schedule(self, store):
        """Test that a zero-delta signal leaves scheduling and streaks alone."""
        created = await store.create(USER, "algebra", "Algebra", initial_mastery=0.4)
        signal = LearningSignal(type=LearningSignalType.ASKING_ABOUT, concept_id="algebra", mastery_delta=0.0)
        update = await store.apply_signal(USER, signal)

        record = await store.get(USER, "algebra")
        assert update.mastery_change == 0.0
        assert record.current_interval == created.current_interval
        assert record.ease_factor == created.ease_factor
        assert record.next_review_date == created.next_review_date
        assert record.streak_correct == 0 and record.streak_wrong == 0
        assert record.total_attempts == 1
        assert record.confidence == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_negative_signal(self, store):
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.4)
        signal = LearningSignal(type=LearningSignalType.EXPRESSES_CONFUSION, concept_id="algebra", mastery_delta=-0.1)
        update = await store.apply_signal(USER, signal)
        assert update.mastery_change == pytest.approx(-0.1)
        assert (await store.get(USER, "algebra")).streak_wrong == 1


class TestApplyDelta:
    """Test delta application used by propagation."""

    @pytest.mark.asyncio
    async def test_absent_without_label(self, store, records):
        """Test that nothing is created without a label."""
        assert await store.apply_delta(USER, "algebra", 0.05) is None
        assert len(records) == 0

    @pytest.mark.asyncio
    async def test_absent_with_label_creates(self, store):
        record = await store.apply_delta(USER, "algebra", 0.05, "Algebra")
        assert record.mastery_score == pytest.approx(0.05)
        assert (await store.get(USER, "algebra")).concept_label == "Algebra"

    @pytest.mark.asyncio
    async def test_sub_threshold_delta_is_a_no_op(self, store):
        """Test that negligible deltas are not written."""
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.5)
        before = await store.get(USER, "algebra")

        assert await store.apply_delta(USER, "algebra", 0.0009) is None
        assert await store.apply_delta(USER, "algebra", -0.0005) is None
        assert await store.get(USER, "algebra") == before

    @pytest.mark.asyncio
    async def test_clamped_change_below_threshold(self, store):
        """Test that a delta absorbed by clamping writes nothing."""
        await store.create(USER, "algebra", "Algebra", initial_mastery=1.0)
        assert await store.apply_delta(USER, "algebra", 0.2) is None

    @pytest.mark.asyncio
    async def test_delta_rounded_and_clamped(self, store):
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.5)
        record = await store.apply_delta(USER, "algebra", 0.01234)
        assert record.mastery_score == 0.512

        record = await store.apply_delta(USER, "algebra", -2.0)
        assert record.mastery_score == 0.0

    @pytest.mark.asyncio
    async def test_delta_does_not_touch_schedule(self, store, clock):
        created = await store.create(USER, "algebra", "Algebra", initial_mastery=0.5)
        clock.advance(days=3)
        record = await store.apply_delta(USER, "algebra", 0.05)
        assert record.last_interaction == created.last_interaction
        assert record.total_attempts == 0

    @pytest.mark.asyncio
    async def test_change_reports_previous(self, store):
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.5)
        change = await store.apply_delta_change(USER, "algebra", 0.05)
        assert isinstance(change, MasteryChange)
        assert change.previous_mastery == 0.5
        assert change.record.mastery_score == pytest.approx(0.55)


class TestQueries:
    """Test aggregate queries."""

    async def _populate(self, store, clock):
        await store.create(USER, "algebra", "Algebra", initial_mastery=0.95)
        await store.create(USER, "calculus", "Calculus", initial_mastery=0.5)
        await store.create(USER, "topology", "Topology", initial_mastery=0.1)
        await store.create(USER, "geometry", "Geometry", initial_mastery=0.85)
        clock.advance(hours=1)

    @pytest.mark.asyncio
    async def test_weakest_and_strongest(self, store, clock):
        await self._populate(store, clock)
        weakest = await store.get_weakest(USER, limit=2)
        strongest = await store.get_strongest(USER, limit=2)
        assert [m.concept_id for m in weakest] == ["topology", "calculus"]
        assert [m.concept_id for m in strongest] == ["algebra", "geometry"]

    @pytest.mark.asyncio
    async def test_due_for_review(self, store, clock):
        await self._populate(store, clock)
        assert await store.get_due_for_review(USER) == []

        record = await store.get(USER, "calculus")
        record.next_review_date = clock.now - timedelta(days=3)
        await store.save(record)
        clock.advance(days=2)

        due = await store.get_due_for_review(USER)
        assert [m.concept_id for m in due][0] == "calculus"
        assert len(due) == 4

    @pytest.mark.asyncio
    async def test_mastery_range(self, store, clock):
        await self._populate(store, clock)
        in_range = await store.get_by_mastery_range(USER, 0.4, 0.9)
        assert [m.concept_id for m in in_range] == ["calculus", "geometry"]

    @pytest.mark.asyncio
    async def test_batch(self, store, clock):
        await self._populate(store, clock)
        batch = await store.get_batch(USER, ["algebra", "unknown", "algebra"])
        assert list(batch) == ["algebra"]

    @pytest.mark.asyncio
    async def test_has_mastery_data(self, store, clock):
        assert await store.has_mastery_data(USER) is False
        await self._populate(store, clock)
        assert await store.has_mastery_data(USER) is True
        assert sorted(await store.concept_ids(USER)) == ["algebra", "calculus", "geometry", "topology"]

    @pytest.mark.asyncio
    async def test_summary(self, store, clock):
        """Test summary bands and average."""
        await self._populate(store, clock)
        summary = await store.get_summary(USER)

        assert summary.total_concepts == 4
        assert summary.mastered_concepts == 2
        assert summary.learning_concepts == 1
        assert summary.weak_concepts == 1
        assert summary.concepts_due_for_review == 0
        assert summary.average_mastery == pytest.approx(0.6, abs=0.01)

    @pytest.mark.asyncio
    async def test_empty_summary(self, store):
        summary = await store.get_summary(USER)
        assert summary.total_concepts == 0
        assert summary.average_mastery == 0.0

    @pytest.mark.asyncio
    async def test_records_validate_as_mastery_records(self, store, records, clock):
        await self._populate(store, clock)
        raw = await records.get(mastery_key(USER, "algebra"))
        assert MasteryRecord.model_validate(raw).concept_label == "Algebra"
