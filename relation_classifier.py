"""
Classification of graph edge labels into learning relation types.

Edge labels produced by graph construction are free text ("requires",
"is an example of", ...). Propagation and prerequisite checks need one of the
closed ``LearningRelationType`` values, each with a default propagation
weight.
"""

from typing import Dict, Optional, Sequence, Tuple

from mastery_entities import KnowledgeGraphEdge, LearningRelationType


# How much of a mastery change crosses an edge of each type
PROPAGATION_WEIGHTS: Dict[LearningRelationType, float] = {
    LearningRelationType.PREREQUISITE: 0.10,
    LearningRelationType.COREQUISITE: 0.05,
    LearningRelationType.RELATED: 0.03,
    LearningRelationType.APPLICATION: 0.02,
    LearningRelationType.EXAMPLE: 0.01,
    LearningRelationType.OPPOSITE: 0.00,
}

# Checked in order; the first matching keyword wins.
RELATION_KEYWORDS: Sequence[Tuple[LearningRelationType, Tuple[str, ...]]] = (
    (LearningRelationType.PREREQUISITE, ("prerequisite", "requires", "depends")),
    (LearningRelationType.EXAMPLE, ("example", "instance")),
    (LearningRelationType.APPLICATION, ("applies", "uses", "application")),
    (LearningRelationType.OPPOSITE, ("opposite", "contrast")),
    (LearningRelationType.COREQUISITE, ("similar", "related")),
)


def classify(relation_label: Optional[str],
             explicit_type: Optional[LearningRelationType] = None) -> LearningRelationType:
    """Map an edge label to a learning relation type.

    An explicit type always wins. Otherwise keywords are matched in order
    against the lower-cased label, falling back to ``RELATED``.
    """
    if explicit_type is not None:
        return LearningRelationType(explicit_type)

    label = (relation_label or "").lower()
    for relation_type, keywords in RELATION_KEYWORDS:
        if any(keyword in label for keyword in keywords):
            return relation_type
    return LearningRelationType.RELATED


def classify_edge(edge: KnowledgeGraphEdge) -> LearningRelationType:
    """Classify an edge using its typed relation when present."""
    return classify(edge.relation, edge.learning_relation)


def default_weight(relation_type: LearningRelationType) -> float:
    return PROPAGATION_WEIGHTS[LearningRelationType(relation_type)]


def resolve_weight(edge: KnowledgeGraphEdge,
                   relation_type: Optional[LearningRelationType] = None,
                   forward: bool = False,
                   forward_factor: float = 0.5) -> float:
    """Propagation weight for one edge.

    An explicit ``propagation_weight`` on the edge overrides the default for
    that edge only. Forward propagation (source to dependent target) scales
    the default weight by ``forward_factor``; overrides are used as given.
    """
    if edge.propagation_weight is not None:
        return edge.propagation_weight

    relation_type = relation_type or classify_edge(edge)
    weight = default_weight(relation_type)
    if forward:
        weight *= forward_factor
    return weight
