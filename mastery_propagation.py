"""
Mastery propagation through a learner's knowledge graph.

When a learner gains mastery of a concept, neighboring concepts receive a
weighted share of the change:

1. Prerequisites of the concept (incoming prerequisite edges) are credited at
   the full edge weight, since the learner evidently understood them.
2. Concepts that depend on it (outgoing edges) are credited at half the
   default weight unless the edge carries an explicit override.

Negative changes stay local. Neighbor updates are best-effort: a failing
neighbor is logged and recorded on the result while the others proceed.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Dict, List, NamedTuple, Optional, Set, Tuple

import logfire

from graph_store import GraphStore
from mastery_config import MasteryConfig, get_config
from mastery_entities import (
    KnowledgeGraph,
    LearningRelationType,
    MasteryPropagationResult,
    PropagationResult,
    RelatedConcept,
)
from mastery_errors import PropagationFailure, StoreError
from mastery_store import MasteryStore
from relation_classifier import classify_edge, resolve_weight


logger = logging.getLogger(__name__)


class PropagationTarget(NamedTuple):
    """A neighbor scheduled to receive part of a mastery change."""
    concept_id: str
    change: float
    relation: LearningRelationType
    source_id: str
    depth: int


class PropagationEngine:
    """Spreads mastery changes to graph neighbors."""

    def __init__(self,
                 store: MasteryStore,
                 graphs: GraphStore,
                 settings: Optional[MasteryConfig] = None):
        """Initialize the propagation engine.

        Args:
            store: Mastery store used for every neighbor write
            graphs: Read-only source of knowledge graphs
            settings: Mastery settings, defaults to the global configuration
        """
        self.store = store
        self.graphs = graphs
        self.settings = settings or get_config().mastery

    def _neighbors(self,
                   graph: KnowledgeGraph,
                   concept_id: str,
                   change: float,
                   depth: int) -> List[PropagationTarget]:
        """Weighted neighbors of one concept, in edge order."""
        targets = []

        for edge in graph.incoming(concept_id):
            relation = classify_edge(edge)
            if relation != LearningRelationType.PREREQUISITE:
                continue
            weight = resolve_weight(edge, relation)
            if weight > 0:
                targets.append(PropagationTarget(edge.source, change * weight, relation, concept_id, depth))

        for edge in graph.outgoing(concept_id):
            relation = classify_edge(edge)
            weight = resolve_weight(
                edge,
                relation,
                forward=True,
                forward_factor=self.settings.forward_weight_factor,
            )
            if weight > 0:
                targets.append(PropagationTarget(edge.target, change * weight, relation, concept_id, depth))

        return targets

    async def _apply(self,
                     user_id: str,
                     graph: KnowledgeGraph,
                     target: PropagationTarget) -> Optional[PropagationResult]:
        node = graph.get_node(target.concept_id)
        label = (node.label or node.id) if node else None

        change = await self.store.apply_delta_change(user_id, target.concept_id, target.change, label)
        if change is None:
            return None

        return PropagationResult(
            concept_id=target.concept_id,
            concept_label=change.record.concept_label,
            previous_mastery=change.previous_mastery,
            new_mastery=change.record.mastery_score,
            propagation_source=target.source_id,
            propagation_type=target.relation,
            depth=target.depth,
        )

    async def propagate(self,
                        user_id: str,
                        concept_id: str,
                        mastery_change: float,
                        max_depth: Optional[int] = None) -> MasteryPropagationResult:
        """Propagate a mastery change from ``concept_id`` to its neighbors.

        With the default depth of one only direct neighbors are updated.
        Deeper walks are breadth-first; a concept ``d`` hops away receives the
        change multiplied by every edge weight along the path. No concept is
        updated twice in one call.

        Args:
            user_id: Learner whose records are updated
            concept_id: Concept whose mastery changed
            mastery_change: Signed change of the source concept's mastery
            max_depth: Number of hops, defaults to ``propagation_max_depth``

        Returns:
            ``MasteryPropagationResult`` listing every neighbor written
        """
        start_time = time.monotonic()
        max_depth = self.settings.propagation_max_depth if max_depth is None else max_depth
        result = MasteryPropagationResult(
            source_concept_id=concept_id,
            source_mastery_change=mastery_change,
        )

        with logfire.span("propagation_engine.propagate") as span:
            span.set_attribute("user_id", user_id)
            span.set_attribute("concept_id", concept_id)
            span.set_attribute("mastery_change", mastery_change)

            if mastery_change <= 0 or max_depth < 1:
                result.processing_time_ms = (time.monotonic() - start_time) * 1000
                return result

            try:
                graph = await self.graphs.get_graph(user_id)
            except StoreError as e:
                logger.error(f"Mastery propagation failed for {user_id}/{concept_id}: {e}")
                result.processing_time_ms = (time.monotonic() - start_time) * 1000
                return result

            if graph.is_empty():
                result.processing_time_ms = (time.monotonic() - start_time) * 1000
                return result

            visited: Set[str] = {concept_id}
            frontier: List[Tuple[str, float]] = [(concept_id, mastery_change)]

            for depth in range(1, max_depth + 1):
                targets = []
                for node_id, change in frontier:
                    for target in self._neighbors(graph, node_id, change, depth):
                        if target.concept_id in visited:
                            continue
                        visited.add(target.concept_id)
                        targets.append(target)

                if not targets:
                    break

                outcomes = await asyncio.gather(
                    *(self._apply(user_id, graph, target) for target in targets),
                    return_exceptions=True,
                )

                frontier = []
                for target, outcome in zip(targets, outcomes):
                    if isinstance(outcome, Exception):
                        failure = PropagationFailure.from_exception(target.concept_id, outcome)
                        logger.warning(
                            f"Skipping propagation to {target.concept_id} for {user_id}: {outcome}"
                        )
                        result.failures.append(failure)
                    elif outcome is not None:
                        result.propagated_to.append(outcome)
                        frontier.append((target.concept_id, target.change))

            result.total_affected = len(result.propagated_to)
            result.processing_time_ms = (time.monotonic() - start_time) * 1000

            span.set_attribute("concepts_affected", result.total_affected)
            span.set_attribute("failures", len(result.failures))
            logfire.info(
                "Mastery propagation completed",
                user_id=user_id,
                source_concept_id=concept_id,
                concepts_affected=result.total_affected,
                processing_time_ms=result.processing_time_ms,
            )
            if result.failures:
                logfire.warning(
                    "Mastery propagation partially failed",
                    user_id=user_id,
                    failures=[f.to_log_dict() for f in result.failures],
                )

        return result

    async def get_related_concepts(self,
                                   user_id: str,
                                   concept_id: str,
                                   max_depth: int = 2,
                                   relation_types: Optional[List[LearningRelationType]] = None
                                   ) -> List[RelatedConcept]:
        """List concepts reachable from ``concept_id`` within ``max_depth`` hops.

        Edges are followed in both directions. When ``relation_types`` is
        given only edges of those types are followed. Neighbors missing from
        the node list are skipped.
        """
        try:
            graph = await self.graphs.get_graph(user_id)
        except StoreError as e:
            logger.error(f"Failed to load graph for related concepts of {concept_id}: {e}")
            return []

        allowed = set(relation_types) if relation_types else None
        found: Dict[str, Tuple[LearningRelationType, int]] = {}
        visited = {concept_id}
        queue = deque([(concept_id, 0)])

        while queue:
            current, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for edge in graph.incoming(current) + graph.outgoing(current):
                neighbor = edge.source if edge.target == current else edge.target
                if neighbor in visited:
                    continue
                relation = classify_edge(edge)
                if allowed is not None and relation not in allowed:
                    continue
                if graph.get_node(neighbor) is None:
                    continue
                visited.add(neighbor)
                found[neighbor] = (relation, depth + 1)
                queue.append((neighbor, depth + 1))

        mastery = await self.store.get_batch(user_id, found.keys())
        related = []
        for neighbor_id, (relation, depth) in found.items():
            node = graph.get_node(neighbor_id)
            effective = mastery.get(neighbor_id)
            related.append(RelatedConcept(
                concept_id=neighbor_id,
                concept_label=node.label or neighbor_id,
                relation=relation,
                mastery=effective.effective_mastery if effective else None,
                depth=depth,
            ))
        return related
