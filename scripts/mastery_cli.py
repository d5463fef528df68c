#!/usr/bin/env python3
"""
Command-line interface for exercising the mastery engine locally.

Knowledge graphs are read from a JSON file (``{"nodes": [...], "edges": [...]}``)
and mastery records are kept in a JSON state file between runs, using the
in-memory backends.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import logfire

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from graph_store import InMemoryGraphStore
from learning_path import LearningPathPlanner
from mastery_config import get_config, get_log_level
from mastery_entities import AnswerEvaluation, KnowledgeGraph
from mastery_propagation import PropagationEngine
from mastery_store import MasteryStore
from mastery_updates import MasteryUpdateService
from prerequisite_advisor import PrerequisiteAdvisor
from record_store import InMemoryRecordStore


logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Components wired over in-memory backends."""
    records: InMemoryRecordStore
    store: MasteryStore
    updates: MasteryUpdateService
    advisor: PrerequisiteAdvisor
    planner: LearningPathPlanner


def load_graph(path: Path) -> KnowledgeGraph:
    """Read a knowledge graph from a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return KnowledgeGraph.model_validate(json.load(f))


def load_state(records: InMemoryRecordStore, path: Optional[Path]):
    if path is not None and path.exists():
        with open(path, "r", encoding="utf-8") as f:
            records.load(json.load(f))
        logger.debug(f"Loaded {len(records)} records from {path}")


def save_state(records: InMemoryRecordStore, path: Optional[Path]):
    if path is None:
        return
    with open(path, "w", encoding="utf-8") as f:
        json.dump(records.snapshot(), f, indent=2, sort_keys=True)
    logger.debug(f"Saved {len(records)} records to {path}")


async def build_engine(user_id: str, graph_path: Path, state_path: Optional[Path]) -> Engine:
    """Wire the engine for one user over the given files."""
    settings = get_config().mastery
    records = InMemoryRecordStore()
    load_state(records, state_path)

    graphs = InMemoryGraphStore()
    await graphs.set_graph(user_id, load_graph(graph_path))

    store = MasteryStore(records, settings)
    engine = PropagationEngine(store, graphs, settings)
    advisor = PrerequisiteAdvisor(store, graphs, settings)
    return Engine(
        records=records,
        store=store,
        updates=MasteryUpdateService(store, engine, settings),
        advisor=advisor,
        planner=LearningPathPlanner(store, graphs, advisor, settings),
    )


async def answer_command(args) -> int:
    """Handle answer command."""
    engine = await build_engine(args.user, args.graph, args.state)
    update = await engine.updates.record_evaluation(
        args.user, args.concept, AnswerEvaluation(args.evaluation), args.label
    )
    save_state(engine.records, args.state)

    print(f"{args.concept}: {update.previous_mastery} -> {update.new_mastery} "
          f"(change {update.mastery_change:+.3f})")
    if update.propagation:
        for result in update.propagation.propagated_to:
            print(f"  {result.concept_id} [{result.propagation_type.value}]: "
                  f"{result.previous_mastery:.3f} -> {result.new_mastery:.3f}")
        for failure in update.propagation.failures:
            print(f"  {failure.concept_id} skipped: {failure.message}")
    return 0


async def prereqs_command(args) -> int:
    """Handle prereqs command."""
    engine = await build_engine(args.user, args.graph, args.state)
    result = await engine.advisor.check_prerequisites(args.user, args.concept, args.threshold)

    print(f"Prerequisites for {result.concept_label}:")
    if not result.prerequisites:
        print("  none")
    for prereq in result.prerequisites:
        marker = "weak" if prereq.is_weak else "ok"
        print(f"  [{marker}] {prereq.concept_label}: {prereq.effective_mastery:.3f}")
        if prereq.recommendation:
            print(f"         {prereq.recommendation}")
    print(f"All met: {result.all_prerequisites_met}")
    return 0 if result.all_prerequisites_met else 2


async def path_command(args) -> int:
    """Handle path command."""
    engine = await build_engine(args.user, args.graph, args.state)
    suggestions = await engine.planner.get_learning_path(args.user, args.target, args.max)

    if not suggestions:
        print("Nothing to suggest")
    for i, suggestion in enumerate(suggestions, 1):
        print(f"{i}. {suggestion.concept_label} ({suggestion.reason}, "
              f"mastery {suggestion.current_mastery:.3f}, priority {suggestion.priority:.2f})")
    return 0


async def summary_command(args) -> int:
    """Handle summary command."""
    engine = await build_engine(args.user, args.graph, args.state)
    summary = await engine.store.get_summary(args.user)

    print("\n" + "=" * 50)
    print(f"MASTERY SUMMARY: {args.user}")
    print("=" * 50)
    print(f"Concepts: {summary.total_concepts}")
    print(f"  Mastered: {summary.mastered_concepts}")
    print(f"  Learning: {summary.learning_concepts}")
    print(f"  Weak: {summary.weak_concepts}")
    print(f"Average mastery: {summary.average_mastery:.3f}")
    print(f"Due for review: {summary.concepts_due_for_review}")
    print("=" * 50 + "\n")
    return 0


COMMANDS = {
    "answer": answer_command,
    "prereqs": prereqs_command,
    "path": path_command,
    "summary": summary_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mastery tracking over a local knowledge graph")
    parser.add_argument("--graph", type=Path, required=True, help="Knowledge graph JSON file")
    parser.add_argument("--state", type=Path, help="Mastery state JSON file, updated in place")
    parser.add_argument("--user", default="local", help="Learner id")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    answer_parser = subparsers.add_parser("answer", help="Record an answer and propagate mastery")
    answer_parser.add_argument("concept", help="Concept id")
    answer_parser.add_argument(
        "evaluation",
        choices=[e.value for e in AnswerEvaluation],
        help="How the answer was graded",
    )
    answer_parser.add_argument("--label", help="Concept label for new records")

    prereqs_parser = subparsers.add_parser("prereqs", help="Check prerequisites of a concept")
    prereqs_parser.add_argument("concept", help="Concept id")
    prereqs_parser.add_argument("--threshold", type=float, help="Weakness threshold")

    path_parser = subparsers.add_parser("path", help="Suggest a learning path")
    path_parser.add_argument("--target", help="Target concept id")
    path_parser.add_argument("--max", type=int, default=5, help="Maximum suggestions")

    subparsers.add_parser("summary", help="Show mastery summary")
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Nothing is sent unless a logfire token is present
    logfire.configure(send_to_logfire="if-token-present")
    logger.debug(f"Configuration: {get_config().to_dict()}")

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(COMMANDS[args.command](args))


if __name__ == "__main__":
    sys.exit(main())
