"""
Prerequisite checks before a learner moves on to a concept.
"""

import logging
from typing import Optional

import logfire

from graph_store import GraphStore
from mastery_config import MasteryConfig, get_config
from mastery_entities import (
    KnowledgeGraph,
    LearningRelationType,
    PrerequisiteCheckResult,
    PrerequisiteInfo,
)
from mastery_errors import StoreError
from mastery_store import MasteryStore
from relation_classifier import classify_edge


logger = logging.getLogger(__name__)


def review_recommendation(prerequisite_label: str, concept_label: str) -> str:
    return f'Review "{prerequisite_label}" before learning "{concept_label}"'


class PrerequisiteAdvisor:
    """Reports which prerequisites of a concept are weak for a learner."""

    def __init__(self,
                 store: MasteryStore,
                 graphs: GraphStore,
                 settings: Optional[MasteryConfig] = None):
        self.store = store
        self.graphs = graphs
        self.settings = settings or get_config().mastery

    async def check_in_graph(self,
                             user_id: str,
                             graph: KnowledgeGraph,
                             concept_id: str,
                             weakness_threshold: Optional[float] = None) -> PrerequisiteCheckResult:
        """Check prerequisites against an already loaded graph.

        A prerequisite is weak when its effective mastery is below the
        threshold; a prerequisite the learner never touched counts as zero.
        """
        threshold = self.settings.weakness_threshold if weakness_threshold is None else weakness_threshold

        node = graph.get_node(concept_id)
        if node is None:
            return PrerequisiteCheckResult(concept_id=concept_id, concept_label=concept_id)
        concept_label = node.label or concept_id

        prerequisite_ids = []
        for edge in graph.incoming(concept_id):
            if edge.source in prerequisite_ids or graph.get_node(edge.source) is None:
                continue
            if classify_edge(edge) == LearningRelationType.PREREQUISITE:
                prerequisite_ids.append(edge.source)

        mastery = await self.store.get_batch(user_id, prerequisite_ids)

        result = PrerequisiteCheckResult(concept_id=concept_id, concept_label=concept_label)
        for prerequisite_id in prerequisite_ids:
            prerequisite_label = graph.get_node(prerequisite_id).label or prerequisite_id
            effective = mastery.get(prerequisite_id)
            effective_value = effective.effective_mastery if effective else 0.0
            is_weak = effective_value < threshold

            result.prerequisites.append(PrerequisiteInfo(
                concept_id=prerequisite_id,
                concept_label=prerequisite_label,
                mastery=effective.mastery_score if effective else 0.0,
                effective_mastery=effective_value,
                is_weak=is_weak,
                recommendation=review_recommendation(prerequisite_label, concept_label) if is_weak else None,
            ))
            if is_weak:
                result.weak_prerequisites.append(prerequisite_id)

        result.all_prerequisites_met = not result.weak_prerequisites
        return result

    async def check_prerequisites(self,
                                  user_id: str,
                                  concept_id: str,
                                  weakness_threshold: Optional[float] = None) -> PrerequisiteCheckResult:
        """Check whether the learner knows the prerequisites of a concept.

        Args:
            user_id: Learner to check
            concept_id: Concept the learner wants to study
            weakness_threshold: Effective mastery below which a prerequisite
                is weak, defaults to ``weakness_threshold`` (0.5)

        Returns:
            ``PrerequisiteCheckResult``; unknown concepts and store failures
            yield a result with no prerequisites and ``all_prerequisites_met``
        """
        with logfire.span("prerequisite_advisor.check_prerequisites") as span:
            span.set_attribute("user_id", user_id)
            span.set_attribute("concept_id", concept_id)
            try:
                graph = await self.graphs.get_graph(user_id)
                result = await self.check_in_graph(user_id, graph, concept_id, weakness_threshold)
            except StoreError as e:
                logger.error(f"Failed to check prerequisites for {user_id}/{concept_id}: {e}")
                return PrerequisiteCheckResult(concept_id=concept_id, concept_label=concept_id)

            span.set_attribute("weak_prerequisites", len(result.weak_prerequisites))
            return result
