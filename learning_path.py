"""
Learning path suggestions.

With a target concept the path is its weak prerequisites followed by the
target itself. Without one, every concept in the learner's graph is scanned
for weak or overdue mastery. Suggestions are ordered by descending priority.
"""

import logging
from typing import List, Optional

import logfire

from graph_store import GraphStore
from mastery_config import MasteryConfig, get_config
from mastery_entities import KnowledgeGraph, LearningPathSuggestion
from mastery_errors import StoreError
from mastery_store import MasteryStore
from prerequisite_advisor import PrerequisiteAdvisor


logger = logging.getLogger(__name__)

TARGET_PRIORITY = 0.9
DUE_FOR_REVIEW_PRIORITY = 0.8
NEEDS_LEARNING_THRESHOLD = 0.2


class LearningPathPlanner:
    """Suggests what a learner should study next."""

    def __init__(self,
                 store: MasteryStore,
                 graphs: GraphStore,
                 advisor: Optional[PrerequisiteAdvisor] = None,
                 settings: Optional[MasteryConfig] = None):
        self.store = store
        self.graphs = graphs
        self.settings = settings or get_config().mastery
        self.advisor = advisor or PrerequisiteAdvisor(store, graphs, self.settings)

    async def _path_to_target(self,
                              user_id: str,
                              graph: KnowledgeGraph,
                              target_id: str) -> List[LearningPathSuggestion]:
        check = await self.advisor.check_in_graph(user_id, graph, target_id)
        suggestions = [
            LearningPathSuggestion(
                concept_id=prerequisite.concept_id,
                concept_label=prerequisite.concept_label,
                current_mastery=prerequisite.effective_mastery,
                reason=f'Prerequisite for "{check.concept_label}"',
                priority=1.0 - prerequisite.effective_mastery,
            )
            for prerequisite in check.prerequisites
            if prerequisite.is_weak
        ]

        target_node = graph.get_node(target_id)
        if target_node is not None:
            target = await self.store.get_effective(user_id, target_id)
            suggestions.append(LearningPathSuggestion(
                concept_id=target_id,
                concept_label=target_node.label or target_id,
                current_mastery=target.effective_mastery if target else 0.0,
                reason="Target concept",
                priority=TARGET_PRIORITY,
            ))
        return suggestions

    async def _general_path(self, user_id: str, graph: KnowledgeGraph) -> List[LearningPathSuggestion]:
        mastery = await self.store.get_batch(user_id, [node.id for node in graph.nodes])
        suggestions = []
        seen = set()

        for node in graph.nodes:
            if node.id in seen:
                continue
            seen.add(node.id)

            effective = mastery.get(node.id)
            value = effective.effective_mastery if effective else 0.0
            label = node.label or node.id

            if value < self.settings.weakness_threshold:
                suggestions.append(LearningPathSuggestion(
                    concept_id=node.id,
                    concept_label=label,
                    current_mastery=value,
                    reason="Needs learning" if value < NEEDS_LEARNING_THRESHOLD else "Needs strengthening",
                    priority=1.0 - value,
                ))
            elif effective is not None and effective.is_due_for_review:
                suggestions.append(LearningPathSuggestion(
                    concept_id=node.id,
                    concept_label=label,
                    current_mastery=value,
                    reason="Due for review",
                    priority=DUE_FOR_REVIEW_PRIORITY,
                ))
        return suggestions

    async def get_learning_path(self,
                                user_id: str,
                                target_concept_id: Optional[str] = None,
                                max_suggestions: int = 5) -> List[LearningPathSuggestion]:
        """Suggest up to ``max_suggestions`` concepts, highest priority first.

        Args:
            user_id: Learner to plan for
            target_concept_id: Optional concept the learner is working towards
            max_suggestions: Maximum number of suggestions returned

        Returns:
            Suggestions sorted by descending priority; empty when the graph is
            empty or cannot be loaded
        """
        with logfire.span("learning_path.get_learning_path") as span:
            span.set_attribute("user_id", user_id)
            span.set_attribute("target_concept_id", target_concept_id or "")
            try:
                graph = await self.graphs.get_graph(user_id)
                if graph.is_empty():
                    return []

                if target_concept_id:
                    suggestions = await self._path_to_target(user_id, graph, target_concept_id)
                else:
                    suggestions = await self._general_path(user_id, graph)
            except StoreError as e:
                logger.error(f"Failed to build learning path for {user_id}: {e}")
                return []

            suggestions.sort(key=lambda s: s.priority, reverse=True)
            span.set_attribute("suggestions", len(suggestions))
            return suggestions[:max(0, max_suggestions)]
